# ABOUTME: Pytest fixtures and configuration for KOTS operator tests
# ABOUTME: Provides settings, audit logger, manifest helpers, and Kubernetes client mocks

import base64
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from kots_operator.config import OperatorSettings
from kots_operator.kube import ClusterConnection
from kots_operator.utils.logging import AuditLogger


def b64(text: str) -> str:
    """Base64 helper matching how the control plane ships manifests."""
    return base64.b64encode(text.encode()).decode()


def k8s_obj(**fields) -> SimpleNamespace:
    """Attribute-style stand-in for kubernetes_asyncio model objects."""
    return SimpleNamespace(**fields)


def meta(name: str, namespace: str = "default", **fields) -> SimpleNamespace:
    fields.setdefault("annotations", None)
    fields.setdefault("owner_references", None)
    fields.setdefault("resource_version", "1")
    return SimpleNamespace(name=name, namespace=namespace, **fields)


DEPLOYMENT_WEB = """apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 1"""

SERVICE_WEB = """apiVersion: v1
kind: Service
metadata:
  name: web
spec:
  ports:
  - port: 80"""

CONFIGMAP_SETTINGS = """apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
  namespace: other
data:
  key: value"""

CRD_WIDGETS = """apiVersion: apiextensions.k8s.io/v1
kind: CustomResourceDefinition
metadata:
  name: widgets.example.com"""


@pytest.fixture
def settings() -> OperatorSettings:
    """Create operator settings for testing."""
    return OperatorSettings(
        api_endpoint="http://kotsadm:3000",
        token=SecretStr("test-token"),
        target_namespace="default",
        log_json=False,
    )


@pytest.fixture
def audit(tmp_path: Path) -> AuditLogger:
    """Create an audit logger writing to a temporary file."""
    return AuditLogger(tmp_path / "audit.log")


@pytest.fixture
def connection() -> ClusterConnection:
    """Create cluster credentials for kubectl flag tests."""
    return ClusterConnection(
        server="https://10.0.0.1:443",
        token="sa-token",
        ca_file="/var/run/secrets/kubernetes.io/serviceaccount/ca.crt",
    )


@pytest.fixture
def mock_clients() -> MagicMock:
    """Create a mock KubeClients with async API methods."""
    clients = MagicMock()
    clients.core_v1 = AsyncMock()
    clients.apps_v1 = AsyncMock()
    clients.batch_v1 = AsyncMock()
    clients.networking_v1 = AsyncMock()
    return clients
