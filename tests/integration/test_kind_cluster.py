# ABOUTME: Integration tests for deploy, undeploy, and namespace draining against a live cluster
# ABOUTME: Requires a Kind cluster (kind-kots-operator-test context) plus kubectl and kustomize on PATH

"""Integration tests for the deploy path against a Kind cluster.

These tests require:
- Kind cluster with context 'kind-kots-operator-test' (override with TEST_K8S_CONTEXT)
- kubectl and kustomize available in PATH

Each test works in a throwaway namespace and deletes it afterwards. The
control plane is not needed: commands carry no result callback.
"""

from __future__ import annotations

import base64
import os
import shutil
import subprocess
import uuid
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.rest import ApiException
from pydantic import SecretStr

from kots_operator.applier import ApplierFactory
from kots_operator.channel.commands import DeployCommand, UndeployCommand
from kots_operator.config import OperatorSettings
from kots_operator.deploy.cleanup import NamespaceCleaner
from kots_operator.deploy.coordinator import DeployCoordinator
from kots_operator.kube import ClusterConnection, DynamicResources, KubeClients
from kots_operator.utils.logging import AuditLogger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

pytestmark = pytest.mark.integration

APP_SLUG = "integration-app"


def _kubectl_context() -> str:
    """Return the kubectl context to use for tests."""
    return os.environ.get("TEST_K8S_CONTEXT", "kind-kots-operator-test")


def _is_cluster_available() -> bool:
    """Check if the Kind cluster answers and the binaries are installed."""
    if shutil.which("kubectl") is None or shutil.which("kustomize") is None:
        return False
    try:
        result = subprocess.run(
            ["kubectl", "--context", _kubectl_context(), "get", "namespace", "default"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError):
        return False


requires_cluster = pytest.mark.skipif(not _is_cluster_available(), reason="Kind cluster not available")


def _manifests(namespace: str, *names: str) -> str:
    docs = [
        f"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: {name}\n  namespace: {namespace}\ndata:\n  key: value"
        for name in names
    ]
    return base64.b64encode("\n---\n".join(docs).encode()).decode()


@pytest.fixture
async def cluster() -> AsyncIterator[tuple[KubeClients, ClusterConnection]]:
    cfg = client.Configuration()
    await config.load_kube_config(context=_kubectl_context(), client_configuration=cfg)
    clients = KubeClients.from_configuration(cfg)
    try:
        yield clients, ClusterConnection.from_configuration(cfg)
    finally:
        await clients.close()


@pytest.fixture
async def namespace(cluster: tuple[KubeClients, ClusterConnection]) -> AsyncIterator[str]:
    """Create a throwaway namespace and delete it after the test."""
    clients, _ = cluster
    name = f"kots-it-{uuid.uuid4().hex[:8]}"
    await clients.core_v1.create_namespace({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}})
    try:
        yield name
    finally:
        await clients.core_v1.delete_namespace(name)


@pytest.fixture
def coordinator(cluster: tuple[KubeClients, ClusterConnection], namespace: str, tmp_path) -> DeployCoordinator:
    clients, connection = cluster
    audit = AuditLogger(tmp_path / "audit.log")
    settings = OperatorSettings(
        api_endpoint="http://kotsadm:3000",
        token=SecretStr("unused"),
        target_namespace=namespace,
    )
    return DeployCoordinator(
        settings,
        clients,
        ApplierFactory(settings.binaries, connection),
        AsyncMock(),
        cleaner=NamespaceCleaner(clients, audit),
        hooks=AsyncMock(),
        namespace_watcher=AsyncMock(),
        audit=audit,
    )


async def _configmap_names(clients: KubeClients, namespace: str) -> set[str]:
    listing = await clients.core_v1.list_namespaced_config_map(namespace)
    return {item.metadata.name for item in listing.items if item.metadata.name != "kube-root-ca.crt"}


@requires_cluster
class TestDeployIntegration:
    """Deploy and undeploy against a live cluster."""

    async def test_deploy_applies_and_annotates(self, cluster, namespace, coordinator):
        clients, _ = cluster
        cmd = DeployCommand(
            app_id="it-app",
            app_slug=APP_SLUG,
            manifests=_manifests(namespace, "settings", "features"),
            annotate_slug=True,
        )

        report = await coordinator.deploy(cmd)

        assert report.is_error is False, report.apply.joined_stderr if report.apply else ""
        assert await _configmap_names(clients, namespace) == {"settings", "features"}
        settings = await clients.core_v1.read_namespaced_config_map("settings", namespace)
        assert settings.metadata.annotations["kots.io/app-slug"] == APP_SLUG

    async def test_redeploy_removes_dropped_documents(self, cluster, namespace, coordinator):
        clients, _ = cluster
        first = _manifests(namespace, "settings", "features")
        await coordinator.deploy(DeployCommand(app_id="it-app", app_slug=APP_SLUG, manifests=first))

        second = _manifests(namespace, "settings")
        report = await coordinator.deploy(
            DeployCommand(app_id="it-app", app_slug=APP_SLUG, previous_manifests=first, manifests=second)
        )

        assert report.is_error is False
        assert await _configmap_names(clients, namespace) == {"settings"}

    async def test_dry_run_failure_applies_nothing(self, cluster, namespace, coordinator):
        clients, _ = cluster
        broken = base64.b64encode(
            f"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: Bad_Name\n  namespace: {namespace}".encode()
        ).decode()

        report = await coordinator.deploy(DeployCommand(app_id="it-app", manifests=broken))

        assert report.is_error is True
        assert report.apply is None
        assert await _configmap_names(clients, namespace) == set()

    async def test_undeploy_removes_everything(self, cluster, namespace, coordinator):
        clients, _ = cluster
        manifests = _manifests(namespace, "settings", "features")
        await coordinator.deploy(DeployCommand(app_id="it-app", app_slug=APP_SLUG, manifests=manifests))

        is_error = await coordinator.undeploy(
            UndeployCommand(app_id="it-app", app_slug=APP_SLUG, manifests=manifests, wait=True)
        )

        assert is_error is False
        assert await _configmap_names(clients, namespace) == set()


@requires_cluster
class TestNamespaceCleanerIntegration:
    """Namespace draining against a live cluster."""

    async def test_clear_once_deletes_annotated_objects(self, cluster, namespace, coordinator):
        clients, _connection = cluster
        await coordinator.deploy(
            DeployCommand(
                app_id="it-app",
                app_slug=APP_SLUG,
                manifests=_manifests(namespace, "settings"),
                annotate_slug=True,
            )
        )
        await clients.core_v1.create_namespaced_config_map(
            namespace,
            {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "unrelated"}},
        )
        cleaner = NamespaceCleaner(clients, AuditLogger())
        kube = await DynamicResources.connect(clients.api_client)

        first_pass = await cleaner.clear_once(kube, APP_SLUG, namespace)
        for _ in range(10):
            if await cleaner.clear_once(kube, APP_SLUG, namespace):
                break

        assert first_pass is False
        assert await _configmap_names(clients, namespace) == {"unrelated"}
        with pytest.raises(ApiException) as exc_info:
            await clients.core_v1.read_namespaced_config_map("settings", namespace)
        assert exc_info.value.status == 404
