# ABOUTME: PVC deletion and namespace draining for removed applications
# ABOUTME: Polls every namespaced resource type until no object carries the app's slug

"""
Cleanup after removals.

=============================================================================
PVCs
=============================================================================

Deleting a StatefulSet leaves its claims behind. When a deploy asks for it
(clear_pvcs), the claims collected by ManifestRemover are deleted with a zero
grace period and background propagation.

=============================================================================
NAMESPACE DRAINING
=============================================================================

clear_namespaces lists namespaces that must end up free of the app's
objects. Every object the operator applies carries the annotation

    kots.io/app-slug: <slug>

so draining means: discover every namespaced resource type, list each one,
delete what carries the annotation, and repeat until nothing is left.

    attempt 1..60, 2s apart  -> NamespaceClearTimeoutError when exhausted
    then a fixed 20s grace    -> for objects that never carried the annotation
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import aiohttp
import structlog
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.deploy.manifests import APP_SLUG_ANNOTATION, deletion_order, kept_by_restore
from kots_operator.errors import NamespaceClearTimeoutError
from kots_operator.kube import DynamicResources, is_not_found, resource_key

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from kubernetes_asyncio.client import ApiClient

    from kots_operator.deploy.manifests import LabelSelector
    from kots_operator.kube import KubeClients
    from kots_operator.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

DRAIN_ATTEMPTS = 60
DRAIN_INTERVAL = 2.0
DRAIN_GRACE = 20.0

# Resources without API objects of their own, or that never hold applied objects.
SKIP_RESOURCES = frozenset(
    {
        "/v1/bindings",
        "/v1/events",
        "extensions/v1beta1/replicationcontrollers",
        "apps/v1/controllerrevisions",
        "authentication.k8s.io/v1/tokenreviews",
        "authorization.k8s.io/v1/localsubjectaccessreviews",
        "authorization.k8s.io/v1/subjectaccessreviews",
        "authorization.k8s.io/v1/selfsubjectaccessreviews",
        "authorization.k8s.io/v1/selfsubjectrulesreviews",
    }
)


async def delete_pvcs(clients: KubeClients, claims: Iterable[tuple[str, str]], audit: AuditLogger) -> None:
    """
    Delete claims immediately.

    Raises:
        ApiException: For any failure other than NotFound.
    """
    for namespace, name in claims:
        target = f"{namespace}/PersistentVolumeClaim/{name}"
        logger.info("Deleting PVC", target=target)
        try:
            await clients.core_v1.delete_namespaced_persistent_volume_claim(
                name,
                namespace,
                grace_period_seconds=0,
                propagation_policy="Background",
            )
        except ApiException as e:
            if is_not_found(e):
                continue
            audit.log_error("delete_pvc", target, f"{e.status} {e.reason}")
            raise
        audit.log_success("delete_pvc", target)


class NamespaceCleaner:
    """Removes every object annotated with an app slug from namespaces."""

    def __init__(
        self,
        clients: KubeClients,
        audit: AuditLogger,
        resources_factory: Callable[[ApiClient], Awaitable[DynamicResources]] = DynamicResources.connect,
    ) -> None:
        self._clients = clients
        self._audit = audit
        self._resources_factory = resources_factory

    async def clear(
        self,
        slug: str,
        namespaces: Iterable[str],
        is_restore: bool = False,
        restore_label_selector: LabelSelector | None = None,
    ) -> None:
        """
        Drain each namespace in turn.

        Raises:
            NamespaceClearTimeoutError: If a namespace still holds app objects
                                        after every attempt.
        """
        namespaces = list(namespaces)
        if not namespaces:
            return

        kube = await self._resources_factory(self._clients.api_client)
        for namespace in namespaces:
            await self._drain(kube, slug, namespace, is_restore, restore_label_selector)

        await asyncio.sleep(DRAIN_GRACE)

    async def _drain(
        self,
        kube: DynamicResources,
        slug: str,
        namespace: str,
        is_restore: bool,
        selector: LabelSelector | None,
    ) -> None:
        log = logger.bind(app_slug=slug, namespace=namespace)
        log.info("Ensuring all app objects have been removed from namespace")

        for attempt in range(DRAIN_ATTEMPTS):
            try:
                gone = await self.clear_once(kube, slug, namespace, is_restore, selector)
            except (ApiException, aiohttp.ClientError) as e:
                log.warning("Failed to check if app objects have been removed", error=str(e))
                gone = False

            if gone:
                log.info("Namespace cleared of app", attempts=attempt + 1)
                self._audit.log_success("clear_namespace", namespace, {"app_slug": slug})
                return

            if attempt < DRAIN_ATTEMPTS - 1:
                log.debug("Namespace still has app objects, sleeping")
                await asyncio.sleep(DRAIN_INTERVAL)

        error = NamespaceClearTimeoutError(namespace, slug)
        self._audit.log_error("clear_namespace", namespace, str(error))
        raise error

    async def clear_once(
        self,
        kube: DynamicResources,
        slug: str,
        namespace: str,
        is_restore: bool = False,
        selector: LabelSelector | None = None,
    ) -> bool:
        """
        One pass: delete every remaining app object.

        Returns:
            True when no object of the app was found.
        """
        resources = [r for r in await kube.preferred_namespaced_resources() if resource_key(r) not in SKIP_RESOURCES]
        resources = [resources[i] for i in deletion_order([r.kind for r in resources])]

        clear = True
        for resource in resources:
            key = resource_key(resource)
            try:
                items = await kube.list(resource, namespace)
            except (ApiException, aiohttp.ClientError) as e:
                logger.debug("Failed to list namespace resources", resource=key, error=str(e))
                continue

            for item in items:
                metadata = item.get("metadata") or {}
                if kept_by_restore(metadata.get("labels"), is_restore, selector):
                    continue
                if (metadata.get("annotations") or {}).get(APP_SLUG_ANNOTATION) != slug:
                    continue

                clear = False
                name = metadata.get("name", "")
                if metadata.get("deletionTimestamp"):
                    logger.debug("Object is pending deletion", resource=key, name=name)
                    continue
                logger.info("Deleting app object", namespace=namespace, resource=key, name=name)
                await kube.delete(resource, namespace, name)
        return clear
