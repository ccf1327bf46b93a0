# ABOUTME: Pushes application status snapshots to the control plane
# ABOUTME: Per-app throttling plus content hashing for change logging

"""Status reporter.

Reads the monitor's app_status_queue forever. Each snapshot goes through its
app's throttle (at most one push per second, the latest snapshot wins), then
is PUT to the control plane. The content hash only decides whether the
snapshot is logged: the PUT happens every time, so the control plane also
sees periodic identical snapshots.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import httpx
import structlog

from kots_operator.errors import ControlPlaneError
from kots_operator.utils.throttle import ThrottleRegistry

if TYPE_CHECKING:
    import asyncio

    from kots_operator.appstate.types import AppStatus
    from kots_operator.utils.client import ControlPlaneClient

logger = structlog.get_logger(__name__)

STATUS_THROTTLE_SECONDS = 1.0


class StatusReporter:
    """Throttled forwarder from the status queue to the control plane."""

    def __init__(
        self,
        client: ControlPlaneClient,
        queue: asyncio.Queue[AppStatus],
        window_seconds: float = STATUS_THROTTLE_SECONDS,
    ) -> None:
        self._client = client
        self._queue = queue
        self._throttles = ThrottleRegistry(window_seconds)
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()

    async def run(self) -> None:
        """Consume snapshots until cancelled."""
        try:
            while True:
                status = await self._queue.get()
                self._throttles.get(status.app_id).call(lambda status=status: self.send(status))
        finally:
            await self._throttles.close()

    def changed(self, status: AppStatus) -> bool:
        """Record the snapshot's hash and report whether it differs from the last one."""
        next_hash = status.content_hash()
        with self._lock:
            last_hash = self._hashes.get(status.app_id)
            self._hashes[status.app_id] = next_hash
        return last_hash != next_hash

    async def send(self, status: AppStatus) -> None:
        if self.changed(status):
            logger.debug("Sending app status", status=status.to_dict())
        try:
            await self._client.put_app_status(status)
        except (ControlPlaneError, httpx.HTTPError) as e:
            logger.warning("Error sending app status", app_id=status.app_id, error=str(e))
