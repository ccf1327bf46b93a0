# ABOUTME: Application state monitor: per-app informer generations and status aggregation
# ABOUTME: Turns per-resource events into AppStatus snapshots on a single output queue

"""
AppState monitor.

=============================================================================
STRUCTURE
=============================================================================

    Monitor                       one per operator process
      └── AppMonitor (app A)      one per application
            ├── DeploymentController(ns1)
            ├── ServiceController(ns1)
            └── IngressController(ns2)

Monitor.apply(app_id, sequence, informers) hands a new informer set to the
app's AppMonitor, creating it on first use. Every AppMonitor writes its
AppStatus snapshots to the Monitor's shared app_status_queue.

=============================================================================
GENERATIONS
=============================================================================

An AppMonitor processes one message at a time from a single inbox: either a
new informer set or an observed ResourceState. A new informer set starts a
new generation:

1. the controllers of the previous generation are cancelled AND awaited,
2. the epoch counter is incremented,
3. every tracked resource is seeded as "missing" and that status is sent,
4. one controller per (kind, namespace) is started.

Controllers tag every observation with the epoch they were started in.
Observations whose epoch is not the current one are dropped, so a late event
from a cancelled generation can never leak into the new status.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from kots_operator.appstate.kinds import CONTROLLERS
from kots_operator.appstate.types import (
    AppStatus,
    ResourceState,
    StatusInformer,
    resource_states_apply_new,
    sort_resource_states,
)
from kots_operator.errors import MonitorClosedError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping

    from kots_operator.appstate.kinds import KindController
    from kots_operator.kube import KubeClients

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _Reconfigure:
    sequence: int
    informers: tuple[StatusInformer, ...]


@dataclass(frozen=True)
class _Observed:
    epoch: int
    state: ResourceState


class AppMonitor:
    """Health tracking for one application."""

    def __init__(
        self,
        app_id: str,
        clients: KubeClients,
        target_namespace: str,
        output: asyncio.Queue[AppStatus],
        controllers: Mapping[str, type[KindController]] = CONTROLLERS,
    ) -> None:
        self.app_id = app_id
        self._clients = clients
        self._target_namespace = target_namespace
        self._output = output
        self._controllers = controllers
        self._inbox: asyncio.Queue[_Reconfigure | _Observed] = asyncio.Queue(maxsize=1)
        self._epoch = 0
        self._status: AppStatus | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._runner: asyncio.Task[None] | None = None
        self._log = logger.bind(app_id=app_id)

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def status(self) -> AppStatus | None:
        return self._status

    def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.create_task(self._run(), name=f"appmonitor:{self.app_id}")

    async def apply(self, sequence: int, informers: Iterable[StatusInformer]) -> None:
        """
        Hand a new informer set to the runner.

        Raises:
            MonitorClosedError: If the runner has stopped, including while
                                waiting for room in the inbox.
        """
        runner = self._runner
        if runner is None or runner.done():
            raise MonitorClosedError(self.app_id)

        put = asyncio.create_task(self._inbox.put(_Reconfigure(sequence, tuple(informers))))
        try:
            await asyncio.wait((put, runner), return_when=asyncio.FIRST_COMPLETED)
        finally:
            delivered = put.done() and not put.cancelled()
            if not put.done():
                put.cancel()
        if not delivered:
            raise MonitorClosedError(self.app_id)

    async def shutdown(self) -> None:
        if self._runner is None:
            await self._stop_generation()
            return
        self._runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._runner
        self._runner = None

    async def _run(self) -> None:
        try:
            while True:
                message = await self._inbox.get()
                if isinstance(message, _Reconfigure):
                    await self._reconfigure(message)
                elif message.epoch == self._epoch:
                    await self._observe(message.state)
                else:
                    self._log.debug("Dropping event from previous generation", epoch=message.epoch)
        finally:
            await self._stop_generation()

    async def _stop_generation(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _reconfigure(self, message: _Reconfigure) -> None:
        await self._stop_generation()
        self._epoch += 1
        epoch = self._epoch

        informers = list(dict.fromkeys(i.normalize(self._target_namespace) for i in message.informers))
        states = sort_resource_states([ResourceState(i.kind, i.name, i.namespace) for i in informers])
        self._status = AppStatus(self.app_id, tuple(states), sequence=message.sequence)
        await self._output.put(self._status)

        groups: dict[tuple[str, str], list[StatusInformer]] = {}
        for informer in informers:
            groups.setdefault((informer.kind, informer.namespace), []).append(informer)

        for (kind, namespace), members in groups.items():
            controller_cls = self._controllers.get(kind)
            if controller_cls is None:
                self._log.warning("No controller for kind, resource stays missing", kind=kind)
                continue
            controller = controller_cls(self._clients, namespace, members, self._emitter(epoch))
            self._tasks.append(
                asyncio.create_task(
                    self._run_controller(controller, kind, namespace),
                    name=f"appmonitor:{self.app_id}:{kind}:{namespace}",
                )
            )
        self._log.info("Watching app resources", epoch=epoch, resources=len(states), controllers=len(self._tasks))

    def _emitter(self, epoch: int) -> Callable[[ResourceState], Awaitable[None]]:
        async def emit(state: ResourceState) -> None:
            await self._inbox.put(_Observed(epoch, state))

        return emit

    async def _run_controller(self, controller: KindController, kind: str, namespace: str) -> None:
        try:
            await controller.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.exception("Controller stopped", kind=kind, namespace=namespace)

    async def _observe(self, state: ResourceState) -> None:
        if self._status is None:
            return
        states, changed = resource_states_apply_new(list(self._status.resource_states), state)
        if not changed:
            return
        self._status = AppStatus(self.app_id, tuple(states), sequence=self._status.sequence)
        await self._output.put(self._status)


class Monitor:
    """
    Owner of every AppMonitor.

    apply() is only called from the appInformers worker, so the AppMonitor
    map has a single writer.
    """

    def __init__(
        self,
        clients: KubeClients,
        target_namespace: str,
        controllers: Mapping[str, type[KindController]] = CONTROLLERS,
    ) -> None:
        self._clients = clients
        self._target_namespace = target_namespace
        self._controllers = controllers
        self._app_status_queue: asyncio.Queue[AppStatus] = asyncio.Queue(maxsize=1)
        self._monitors: dict[str, AppMonitor] = {}
        self._closed = False

    @property
    def app_status_queue(self) -> asyncio.Queue[AppStatus]:
        return self._app_status_queue

    def app_monitor(self, app_id: str) -> AppMonitor | None:
        return self._monitors.get(app_id)

    async def apply(self, app_id: str, sequence: int, informers: Iterable[StatusInformer]) -> None:
        if self._closed:
            raise MonitorClosedError(app_id)
        monitor = self._monitors.get(app_id)
        if monitor is None:
            monitor = AppMonitor(
                app_id,
                self._clients,
                self._target_namespace,
                self._app_status_queue,
                self._controllers,
            )
            monitor.start()
            self._monitors[app_id] = monitor
        await monitor.apply(sequence, informers)

    async def shutdown(self) -> None:
        self._closed = True
        monitors = list(self._monitors.values())
        self._monitors.clear()
        for monitor in monitors:
            await monitor.shutdown()
