# ABOUTME: Websocket client for the control channel and the command dispatcher
# ABOUTME: Runs inbound, outbound, and heartbeat pumps; hands decoded commands to workers

"""
Control channel client.

=============================================================================
PUMPS
=============================================================================

After dial() three tasks run until the connection ends:

    inbound    reads frames, answers the protocol, hands events to on_event
    outbound   writes queued frames (emit() and heartbeat pings)
    heartbeat  queues a ping every pingInterval seconds and ends the
               connection when no pong came back within
               pingInterval + pingTimeout

on_event is called on the inbound task and MUST NOT block: the Dispatcher
below only decodes the command and starts (or queues) the work.

=============================================================================
DISPATCH
=============================================================================

    deploy / undeploy   -> one task per command; the coordinator serializes
                           commands for the same app with its lock registry
    appInformers        -> a single ordered worker fed by a bounded queue, so
                           informer sets for one app are applied in order
    preflight, support-
    bundle, unknown     -> logged and dropped
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any, assert_never

import aiohttp
import structlog

from kots_operator.channel.commands import (
    IGNORED_EVENTS,
    AppInformersCommand,
    DeployCommand,
    UndeployCommand,
    decode_command,
)
from kots_operator.channel.protocol import (
    DEFAULT_PING_INTERVAL,
    DEFAULT_PING_TIMEOUT,
    PING_FRAME,
    PONG_FRAME,
    EnginePacket,
    EnginePacketType,
    OpenInfo,
    SocketPacket,
    SocketPacketType,
    encode_event,
)
from kots_operator.errors import ChannelError, ProtocolError
from kots_operator.utils.logging import new_correlation_id, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

logger = structlog.get_logger(__name__)

INFORMERS_QUEUE_SIZE = 64


class ChannelClient:
    """
    One websocket connection to the control plane.

    Usage:
        client = ChannelClient(url, on_event=dispatcher.dispatch)
        await client.dial()
        await client.wait_closed()
        await client.close()
    """

    def __init__(
        self,
        url: str,
        on_event: Callable[[str, Any], None],
        *,
        on_connection: Callable[[], None] | None = None,
        on_disconnection: Callable[[str], None] | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ) -> None:
        self._url = url
        self._on_event = on_event
        self._on_connection = on_connection
        self._on_disconnection = on_disconnection
        self._session_factory = session_factory
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._ping_interval = DEFAULT_PING_INTERVAL
        self._ping_timeout = DEFAULT_PING_TIMEOUT
        self._last_pong = time.monotonic()
        self.connected = asyncio.Event()
        self.disconnected = asyncio.Event()

    async def dial(self) -> None:
        """
        Open the websocket and start the pumps.

        Raises:
            ChannelError: If the websocket cannot be opened.
        """
        self._session = self._session_factory()
        try:
            self._ws = await self._session.ws_connect(self._url, autoping=True)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            await self._session.close()
            self._session = None
            raise ChannelError(f"failed to connect: {e}") from e

        self._tasks = [
            asyncio.create_task(self._inbound(), name="channel:inbound"),
            asyncio.create_task(self._outbound(), name="channel:outbound"),
            asyncio.create_task(self._heartbeat(), name="channel:heartbeat"),
        ]

    def emit(self, event: str, payload: Any) -> None:
        """Queue an outbound event."""
        self._outbox.put_nowait(encode_event(event, payload))

    async def wait_closed(self) -> None:
        await self.disconnected.wait()

    async def close(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tasks = []
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    # -------------------------------------------------------------------------
    # PUMPS
    # -------------------------------------------------------------------------

    async def _inbound(self) -> None:
        reason = "connection closed"
        try:
            assert self._ws is not None
            async for message in self._ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    if not self.handle_frame(message.data):
                        reason = "server closed the session"
                        break
                elif message.type == aiohttp.WSMsgType.ERROR:
                    reason = f"websocket error: {self._ws.exception()}"
                    break
        except ProtocolError as e:
            reason = str(e)
        finally:
            self._mark_disconnected(reason)

    async def _outbound(self) -> None:
        while True:
            frame = await self._outbox.get()
            if self._ws is None or self._ws.closed:
                return
            try:
                await self._ws.send_str(frame)
            except (aiohttp.ClientError, ConnectionResetError) as e:
                self._mark_disconnected(f"send failed: {e}")
                return

    async def _heartbeat(self) -> None:
        self._last_pong = time.monotonic()
        while True:
            await asyncio.sleep(self._ping_interval)
            if time.monotonic() - self._last_pong > self._ping_interval + self._ping_timeout:
                self._mark_disconnected("ping timeout")
                return
            self._outbox.put_nowait(PING_FRAME)

    def _mark_disconnected(self, reason: str) -> None:
        if self.disconnected.is_set():
            return
        self.disconnected.set()
        logger.info("Control channel disconnected", reason=reason)
        if self._on_disconnection:
            self._on_disconnection(reason)

    # -------------------------------------------------------------------------
    # FRAMES
    # -------------------------------------------------------------------------

    def handle_frame(self, frame: str) -> bool:
        """
        Process one inbound frame.

        Returns:
            False when the session is over (engine close or socket disconnect).

        Raises:
            ProtocolError: If the frame cannot be decoded.
        """
        packet = EnginePacket.decode(frame)

        if packet.type == EnginePacketType.OPEN:
            info = OpenInfo.decode(packet.data)
            self._ping_interval = info.ping_interval
            self._ping_timeout = info.ping_timeout
            self._last_pong = time.monotonic()
            logger.debug(
                "Control channel session opened",
                sid=info.sid,
                ping_interval=info.ping_interval,
                ping_timeout=info.ping_timeout,
            )
        elif packet.type == EnginePacketType.PING:
            self._outbox.put_nowait(PONG_FRAME)
        elif packet.type == EnginePacketType.PONG:
            self._last_pong = time.monotonic()
        elif packet.type == EnginePacketType.CLOSE:
            return False
        elif packet.type == EnginePacketType.MESSAGE:
            return self._handle_socket_packet(SocketPacket.decode(packet.data))
        return True

    def _handle_socket_packet(self, packet: SocketPacket) -> bool:
        if packet.namespace != "/":
            return True
        if packet.type == SocketPacketType.CONNECT:
            logger.info("Received a connection event")
            self.connected.set()
            if self._on_connection:
                self._on_connection()
        elif packet.type == SocketPacketType.DISCONNECT:
            return False
        elif packet.type == SocketPacketType.ERROR:
            logger.warning("Control channel error", error=packet.data)
        elif packet.type == SocketPacketType.EVENT:
            event, payload = packet.event
            self._on_event(event, payload)
        return True


class Dispatcher:
    """Typed hand-off from inbound events to command workers."""

    def __init__(
        self,
        *,
        on_deploy: Callable[[DeployCommand], Coroutine[Any, Any, Any]],
        on_undeploy: Callable[[UndeployCommand], Coroutine[Any, Any, Any]],
        on_app_informers: Callable[[AppInformersCommand], Awaitable[Any]],
        informers_queue_size: int = INFORMERS_QUEUE_SIZE,
    ) -> None:
        self._on_deploy = on_deploy
        self._on_undeploy = on_undeploy
        self._on_app_informers = on_app_informers
        self._informers: asyncio.Queue[tuple[str, AppInformersCommand]] = asyncio.Queue(maxsize=informers_queue_size)
        self._worker: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._informers_worker(), name="dispatch:appInformers")

    def dispatch(self, event: str, payload: Any) -> None:
        """Decode an event and start its work without waiting for it."""
        if event in IGNORED_EVENTS:
            logger.info("Ignoring unsupported event", command=event)
            return
        try:
            command = decode_command(event, payload)
        except ChannelError as e:
            logger.warning("Dropping command", command=event, error=str(e))
            return

        cid = new_correlation_id()
        logger.info("Received command", command=event, app_id=command.app_id)

        if isinstance(command, DeployCommand):
            self._spawn(self._on_deploy(command), f"deploy:{command.app_id}")
        elif isinstance(command, UndeployCommand):
            self._spawn(self._on_undeploy(command), f"undeploy:{command.app_id}")
        elif isinstance(command, AppInformersCommand):
            try:
                self._informers.put_nowait((cid, command))
            except asyncio.QueueFull:
                logger.error("Informer queue full, dropping informers", app_id=command.app_id)
        else:
            assert_never(command)

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Command failed", task=task.get_name(), error=str(task.exception()))

    async def _informers_worker(self) -> None:
        while True:
            cid, command = await self._informers.get()
            set_correlation_id(cid)
            try:
                await self._on_app_informers(command)
            except Exception:
                logger.exception("Failed to apply app informers", app_id=command.app_id)

    async def join(self) -> None:
        """Wait for running command tasks (used by tests and shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        for task in list(self._tasks):
            task.cancel()
        await self.join()
