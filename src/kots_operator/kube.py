# ABOUTME: Kubernetes client construction and dynamic resource access
# ABOUTME: Loads in-cluster or kubeconfig credentials and shares them with kubectl and the dynamic client

"""
Kubernetes access.

Typed operations (namespaces, secrets, pods, PVCs, jobs, informers) go
through kubernetes_asyncio. Namespace draining needs discovery plus
list/delete of ANY namespaced resource type, including custom resources the
app installed; that is done with DynamicResources over the same ApiClient.

kubectl gets its token from the live Configuration on every invocation, so a
rotated service account token reaches it as well.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.rest import ApiException
from kubernetes_asyncio.dynamic import DynamicClient
from kubernetes_asyncio.dynamic.resource import Resource, ResourceList

if TYPE_CHECKING:
    from pathlib import Path

logger = structlog.get_logger(__name__)


# =============================================================================
# CONNECTION DETAILS
# =============================================================================


@dataclass(frozen=True)
class ClusterConnection:
    """
    Credentials shared by the typed client and kubectl.

    A connection built from a Configuration reads the bearer token from it on
    every call; the static token is only used without one.
    """

    server: str
    token: str | None = None
    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    insecure: bool = False
    configuration: client.Configuration | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_configuration(cls, cfg: client.Configuration) -> ClusterConnection:
        return cls(
            server=cfg.host,
            configuration=cfg,
            ca_file=cfg.ssl_ca_cert,
            cert_file=cfg.cert_file,
            key_file=cfg.key_file,
            insecure=not cfg.verify_ssl,
        )

    async def current_token(self) -> str | None:
        """Bearer token, refreshed through the Configuration's hook when it has one."""
        if self.configuration is None:
            return self.token
        auth = await self.configuration.get_api_key_with_prefix("BearerToken", alias="authorization")
        if not auth or auth.startswith("Basic "):
            return None
        return auth.removeprefix("Bearer ").strip()

    async def kubectl_flags(self) -> list[str]:
        """Connection flags for kubectl invocations."""
        flags = [f"--server={self.server}"]
        token = await self.current_token()
        if token:
            flags.append(f"--token={token}")
        if self.ca_file:
            flags.append(f"--certificate-authority={self.ca_file}")
        if self.cert_file:
            flags.append(f"--client-certificate={self.cert_file}")
        if self.key_file:
            flags.append(f"--client-key={self.key_file}")
        if self.insecure:
            flags.append("--insecure-skip-tls-verify=true")
        return flags


async def load_configuration(kubeconfig: Path | None = None) -> client.Configuration:
    """
    Load cluster credentials.

    In-cluster service account by default; a kubeconfig when one is given.
    """
    cfg = client.Configuration()
    if kubeconfig:
        await config.load_kube_config(config_file=str(kubeconfig), client_configuration=cfg)
    else:
        config.load_incluster_config(client_configuration=cfg)
    return cfg


@dataclass
class KubeClients:
    """Typed API groups sharing one ApiClient."""

    api_client: client.ApiClient
    core_v1: client.CoreV1Api
    apps_v1: client.AppsV1Api
    batch_v1: client.BatchV1Api
    networking_v1: client.NetworkingV1Api

    @classmethod
    def from_configuration(cls, cfg: client.Configuration) -> KubeClients:
        api_client = client.ApiClient(configuration=cfg)
        return cls(
            api_client=api_client,
            core_v1=client.CoreV1Api(api_client),
            apps_v1=client.AppsV1Api(api_client),
            batch_v1=client.BatchV1Api(api_client),
            networking_v1=client.NetworkingV1Api(api_client),
        )

    async def close(self) -> None:
        await self.api_client.close()


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


# =============================================================================
# DYNAMIC RESOURCES
# =============================================================================


def _json_body(_client: DynamicClient, data: Any) -> Any:
    return data


def resource_key(resource: Resource) -> str:
    """group/version/plural, with an empty group for the core API."""
    return f"{resource.group or ''}/{resource.api_version}/{resource.name}"


class DynamicResources:
    """
    Discovery and unstructured list/delete through the dynamic client.

    Requests share the typed clients' ApiClient, so they use the same
    credentials, including a rotated service account token.

    Usage:
        kube = await DynamicResources.connect(clients.api_client)
        for resource in await kube.preferred_namespaced_resources():
            items = await kube.list(resource, "my-namespace")
    """

    def __init__(self, dynamic: DynamicClient) -> None:
        self._dynamic = dynamic

    @classmethod
    async def connect(cls, api_client: client.ApiClient) -> DynamicResources:
        return cls(await DynamicClient(api_client))

    async def preferred_namespaced_resources(self) -> list[Resource]:
        """
        Namespaced resources of every group's preferred version that support
        list and delete.

        A group whose discovery fails is skipped: an app may register an
        APIService backed by one of its own Deployments, which is exactly the
        kind of thing that is mid-deletion while a namespace is drained.
        """
        versions: list[tuple[str, str, str]] = [("api", "", "v1")]
        groups = await self._dynamic.request("GET", "/apis", serializer=_json_body)
        for group in groups.get("groups", []):
            preferred = group.get("preferredVersion") or {}
            if preferred.get("version"):
                versions.append(("apis", group["name"], preferred["version"]))

        resources: list[Resource] = []
        for prefix, group, version in versions:
            try:
                by_kind = await self._dynamic.resources.get_resources_for_api_version(prefix, group, version, True)
            except (ApiException, aiohttp.ClientError) as e:
                logger.info("Failed to list resources for group", group=group, version=version, error=str(e))
                continue
            for candidates in by_kind.values():
                for resource in candidates:
                    if isinstance(resource, ResourceList) or not resource.namespaced:
                        continue
                    if not {"list", "delete"} <= set(resource.verbs or []):
                        continue
                    resources.append(resource)
        return resources

    async def list(self, resource: Resource, namespace: str) -> list[dict[str, Any]]:
        listing = await self._dynamic.get(resource, namespace=namespace)
        return listing.to_dict().get("items") or []

    async def delete(self, resource: Resource, namespace: str, name: str) -> None:
        try:
            await self._dynamic.delete(resource, name=name, namespace=namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise
