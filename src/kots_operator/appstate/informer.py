# ABOUTME: List-watch informer loop over kubernetes_asyncio watch streams
# ABOUTME: Keeps a local cache and turns list/watch results into add/update/delete callbacks

"""List-watch informer.

The informer lists a resource type once, remembers every object by
namespace/name, then follows the watch stream from the list's
resourceVersion. When the stream ends (server timeout, resync period, 410
Gone, transient error) it lists again and reconciles the cache against the
fresh list, synthesizing the add/update/delete callbacks a consumer would
have seen. A relist therefore also acts as a periodic resync: every cached
object is re-delivered through on_update.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.rest import ApiException

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = structlog.get_logger(__name__)

# Watch streams are closed by the server after this many seconds when no
# resync period is requested.
DEFAULT_WATCH_TIMEOUT = 300
ERROR_BACKOFF = 1.0


def object_key(obj: Any) -> str:
    """Cache key for a Kubernetes object: "namespace/name" or "name"."""
    metadata = obj.metadata
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


class Informer:
    """Cached list + watch of one resource type."""

    def __init__(
        self,
        list_func: Callable[..., Awaitable[Any]],
        *,
        name: str,
        namespace: str | None = None,
        on_add: Callable[[Any], Awaitable[None]] | None = None,
        on_update: Callable[[Any, Any], Awaitable[None]] | None = None,
        on_delete: Callable[[Any], Awaitable[None]] | None = None,
        resync_period: int | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        """
        Args:
            list_func: Namespaced or cluster-wide list method of a typed API,
                       e.g. AppsV1Api.list_namespaced_deployment.
            name: Label used in log lines.
            namespace: Namespace passed to list_func; None for cluster-wide lists.
            on_add: Called with each new object.
            on_update: Called with (old, new) for changed and resynced objects.
            on_delete: Called with the last known object.
            resync_period: Seconds between forced relists.
            watch_factory: Builds the watch object; replaced in tests.
        """
        self._list_func = list_func
        self._name = name
        self._namespace = namespace
        self._on_add = on_add
        self._on_update = on_update
        self._on_delete = on_delete
        self._watch_timeout = resync_period or DEFAULT_WATCH_TIMEOUT
        self._watch_factory = watch_factory
        self._cache: dict[str, Any] = {}
        self._log = logger.bind(informer=name, namespace=namespace or "*")

    @property
    def cache(self) -> dict[str, Any]:
        return dict(self._cache)

    def _list_kwargs(self) -> dict[str, Any]:
        if self._namespace is None:
            return {}
        return {"namespace": self._namespace}

    async def run(self) -> None:
        """Run until cancelled."""
        while True:
            try:
                await self.list_and_watch()
            except ApiException as e:
                if e.status == 410:
                    self._log.debug("Watch expired, relisting")
                    continue
                self._log.warning("Informer API error", status=e.status, reason=e.reason)
                await asyncio.sleep(ERROR_BACKOFF)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self._log.warning("Informer connection error", error=str(e))
                await asyncio.sleep(ERROR_BACKOFF)

    async def list_and_watch(self) -> None:
        """One list followed by one watch stream."""
        kwargs = self._list_kwargs()
        listing = await self._list_func(**kwargs)
        resource_version = listing.metadata.resource_version
        await self._replace(listing.items or [])

        w = self._watch_factory()
        try:
            async for event in w.stream(
                self._list_func,
                resource_version=resource_version,
                timeout_seconds=self._watch_timeout,
                **kwargs,
            ):
                if event["type"] == "ERROR":
                    raw = event.get("raw_object") or {}
                    if raw.get("code") == 410:
                        self._log.debug("Watch expired, relisting")
                        return
                    self._log.warning("Watch error event", status=raw.get("code"), message=raw.get("message"))
                    return
                await self._handle(event["type"], event["object"])
        finally:
            w.stop()

    async def _handle(self, event_type: str, obj: Any) -> None:
        key = object_key(obj)
        if event_type == "DELETED":
            last = self._cache.pop(key, obj)
            if self._on_delete:
                await self._on_delete(last)
            return

        old = self._cache.get(key)
        self._cache[key] = obj
        if old is None:
            if self._on_add:
                await self._on_add(obj)
        elif self._on_update:
            await self._on_update(old, obj)

    async def _replace(self, items: list[Any]) -> None:
        fresh = {object_key(obj): obj for obj in items}
        previous = self._cache
        self._cache = fresh

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                if self._on_add:
                    await self._on_add(obj)
            elif self._on_update:
                await self._on_update(old, obj)

        for key, old in previous.items():
            if key not in fresh and self._on_delete:
                await self._on_delete(old)
