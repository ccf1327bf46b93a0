# ABOUTME: Per-key throttling of async actions
# ABOUTME: Collapses bursts into one leading call plus one trailing call per window

"""Throttle for status pushes.

A throttle runs the first call immediately. Calls arriving inside the
window are not queued one by one: only the most recent one is kept, and it
runs once when the window ends.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = structlog.get_logger(__name__)


class Throttle:
    """Throttle for one key."""

    def __init__(self, window_seconds: float = 1.0) -> None:
        """Initialize throttle.

        Args:
            window_seconds: Minimum spacing between two runs
        """
        self._window = window_seconds
        self._last_run = float("-inf")
        self._pending: Callable[[], Awaitable[None]] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._running: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def call(self, action: Callable[[], Awaitable[None]]) -> None:
        """Run action now, or replace the trailing action of the current window.

        Args:
            action: Coroutine function to run
        """
        elapsed = time.monotonic() - self._last_run
        if self._timer is None and elapsed >= self._window:
            self._start(action)
            return

        self._pending = action
        if self._timer is None:
            self._timer = asyncio.create_task(self._trailing(self._window - elapsed))

    async def _trailing(self, delay: float) -> None:
        try:
            await asyncio.sleep(max(delay, 0))
        finally:
            self._timer = None
        action, self._pending = self._pending, None
        if action is not None:
            self._start(action)

    def _start(self, action: Callable[[], Awaitable[None]]) -> None:
        self._last_run = time.monotonic()
        task = asyncio.create_task(self._invoke(action))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _invoke(self, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await action()
        except Exception:
            logger.exception("Throttled action failed")

    async def close(self) -> None:
        """Cancel the trailing call and wait for running ones."""
        if self._timer:
            self._timer.cancel()
        self._pending = None
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


class ThrottleRegistry:
    """Lazily created throttles keyed by app ID."""

    def __init__(self, window_seconds: float = 1.0) -> None:
        """Initialize registry.

        Args:
            window_seconds: Window used for every throttle the registry creates
        """
        self._window = window_seconds
        self._throttles: dict[str, Throttle] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Throttle:
        with self._lock:
            throttle = self._throttles.get(key)
            if throttle is None:
                throttle = Throttle(self._window)
                self._throttles[key] = throttle
            return throttle

    async def close(self) -> None:
        with self._lock:
            throttles = list(self._throttles.values())
        for throttle in throttles:
            await throttle.close()
