# ABOUTME: Deletes finished hook Jobs according to their delete-policy annotation
# ABOUTME: One Job informer per namespace, registered once and resynced every 30 seconds

"""
Hooks controller.

Apps ship hook Jobs annotated with

    kots.io/hook-delete-policy: hook-succeeded[,hook-failed]

Once such a Job has no active pods and has succeeded (or failed) as the
policy asks, it is deleted with a zero grace period and background
propagation so its pods go with it.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.appstate.informer import Informer
from kots_operator.kube import is_not_found

if TYPE_CHECKING:
    from kots_operator.kube import KubeClients
    from kots_operator.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

HOOK_DELETE_POLICY_ANNOTATION = "kots.io/hook-delete-policy"
HOOK_SUCCEEDED = "hook-succeeded"
HOOK_FAILED = "hook-failed"
HOOKS_RESYNC_SECONDS = 30


def should_delete(job: Any) -> bool:
    policy = (job.metadata.annotations or {}).get(HOOK_DELETE_POLICY_ANNOTATION, "")
    if not policy:
        return False

    status = job.status
    if status is None or (status.active or 0) > 0:
        return False
    if HOOK_SUCCEEDED in policy and (status.succeeded or 0) > 0:
        return True
    return HOOK_FAILED in policy and (status.failed or 0) > 0


class HooksController:
    """Per-namespace Job watchers."""

    def __init__(self, clients: KubeClients, audit: AuditLogger) -> None:
        self._clients = clients
        self._audit = audit
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def namespaces(self) -> set[str]:
        return set(self._tasks)

    def run(self, namespace: str) -> None:
        """Start watching Jobs in a namespace; a second call is a no-op."""
        if not namespace or namespace == "*" or namespace in self._tasks:
            return
        informer = Informer(
            self._clients.batch_v1.list_namespaced_job,
            name=f"hooks:{namespace}",
            namespace=namespace,
            on_add=self.handle,
            on_update=self._on_update,
            resync_period=HOOKS_RESYNC_SECONDS,
        )
        logger.info("Registering cleanup hooks", namespace=namespace)
        self._tasks[namespace] = asyncio.create_task(informer.run(), name=f"hooks:{namespace}")

    async def _on_update(self, _old: Any, new: Any) -> None:
        await self.handle(new)

    async def handle(self, job: Any) -> None:
        if not should_delete(job):
            return

        namespace, name = job.metadata.namespace, job.metadata.name
        target = f"{namespace}/Job/{name}"
        logger.info("Deleting hook job", target=target)
        try:
            await self._clients.batch_v1.delete_namespaced_job(
                name,
                namespace,
                grace_period_seconds=0,
                propagation_policy="Background",
            )
        except ApiException as e:
            if is_not_found(e):
                return
            logger.error("Failed to delete hook job", target=target, status=e.status, reason=e.reason)
            self._audit.log_error("delete_hook_job", target, f"{e.status} {e.reason}")
            return
        self._audit.log_success("delete_hook_job", target)

    async def shutdown(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
