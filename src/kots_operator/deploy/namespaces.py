# ABOUTME: Namespace helpers for deploys: create-if-missing, image pull secrets, late-namespace watcher
# ABOUTME: The watcher reacts to namespaces created after a deploy named them as additional namespaces

"""
Namespaces.

Additional namespaces may not exist yet when a deploy arrives (or "*" may
ask for every namespace). After each deploy the NamespaceWatcher is
restarted over the new set; whenever a matching namespace shows up it gets
the app's image pull secret and a hooks controller.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.appstate.informer import Informer
from kots_operator.errors import ManifestDecodeError
from kots_operator.kube import is_not_found

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from kots_operator.hooks import HooksController
    from kots_operator.kube import KubeClients

logger = structlog.get_logger(__name__)

ALL_NAMESPACES = "*"
DOCKER_CONFIG_KEY = ".dockerconfigjson"


async def ensure_namespace_present(clients: KubeClients, name: str) -> None:
    """
    Create a namespace unless it exists.

    Raises:
        ApiException: If the lookup or the create fails.
    """
    try:
        await clients.core_v1.read_namespace(name)
        return
    except ApiException as e:
        if not is_not_found(e):
            raise

    logger.info("Creating namespace", namespace=name)
    await clients.core_v1.create_namespace(
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}},
    )


def parse_secret(secret_yaml: str) -> dict[str, Any]:
    """
    Raises:
        ManifestDecodeError: If the document is not a named Secret.
    """
    try:
        secret = yaml.safe_load(secret_yaml)
    except yaml.YAMLError as e:
        raise ManifestDecodeError(f"failed to decode image pull secret: {e}") from e
    if not isinstance(secret, dict) or secret.get("kind") != "Secret":
        raise ManifestDecodeError("image pull secret is not a Secret")
    if not (secret.get("metadata") or {}).get("name"):
        raise ManifestDecodeError("image pull secret has no name")
    return secret


async def ensure_image_pull_secret(clients: KubeClients, namespace: str, secret_yaml: str) -> None:
    """
    Create the secret in `namespace`, or refresh its docker config if it exists.

    Raises:
        ManifestDecodeError: If the secret does not parse.
        ApiException: If the API calls fail.
    """
    secret = parse_secret(secret_yaml)
    secret["metadata"]["namespace"] = namespace
    name = secret["metadata"]["name"]

    try:
        existing = await clients.core_v1.read_namespaced_secret(name, namespace)
    except ApiException as e:
        if not is_not_found(e):
            raise
        logger.info("Creating image pull secret", namespace=namespace, name=name)
        await clients.core_v1.create_namespaced_secret(namespace, secret)
        return

    data = dict(existing.data or {})
    data[DOCKER_CONFIG_KEY] = (secret.get("data") or {}).get(DOCKER_CONFIG_KEY)
    existing.data = data
    await clients.core_v1.replace_namespaced_secret(name, namespace, existing)


class NamespaceWatcher:
    """Restartable Namespace informer for a deploy's additional namespaces."""

    def __init__(
        self,
        clients: KubeClients,
        hooks: HooksController | None = None,
        informer_factory: Callable[..., Informer] = Informer,
    ) -> None:
        self._clients = clients
        self._hooks = hooks
        self._informer_factory = informer_factory
        self._namespaces: frozenset[str] = frozenset()
        self._image_pull_secret = ""
        self._task: asyncio.Task[None] | None = None

    @property
    def namespaces(self) -> frozenset[str]:
        return self._namespaces

    def watches(self, name: str) -> bool:
        return ALL_NAMESPACES in self._namespaces or name in self._namespaces

    async def apply(self, namespaces: Iterable[str], image_pull_secret: str = "") -> None:
        """Tear down the current informer and watch `namespaces` instead."""
        await self.stop()
        self._namespaces = frozenset(ns for ns in namespaces if ns)
        self._image_pull_secret = image_pull_secret
        if not self._namespaces:
            return

        informer = self._informer_factory(
            self._clients.core_v1.list_namespace,
            name="namespaces",
            on_add=self.handle,
        )
        logger.debug("Watching namespaces", namespaces=sorted(self._namespaces))
        self._task = asyncio.create_task(informer.run(), name="namespace-watcher")

    async def handle(self, namespace: Any) -> None:
        name = namespace.metadata.name
        if not self.watches(name):
            return

        if self._image_pull_secret:
            try:
                await ensure_image_pull_secret(self._clients, name, self._image_pull_secret)
            except (ApiException, ManifestDecodeError) as e:
                logger.warning("Failed to ensure image pull secret", namespace=name, error=str(e))
        if self._hooks is not None:
            self._hooks.run(name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
