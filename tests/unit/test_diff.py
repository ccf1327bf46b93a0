# ABOUTME: Unit tests for the manifest diff engine
# ABOUTME: Tests deletion selection, pod ownership, and stale manifest removal with claim collection

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import CONFIGMAP_SETTINGS, DEPLOYMENT_WEB, SERVICE_WEB, k8s_obj, meta
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.applier import CommandResult
from kots_operator.deploy.diff import ManifestRemover, compute_deletions, pod_claims, pod_owned_by
from kots_operator.deploy.manifests import LabelSelector, ManifestDoc

PVC_DATA = """apiVersion: v1
kind: PersistentVolumeClaim
metadata:
  name: data"""

NAMESPACE_APPS = """apiVersion: v1
kind: Namespace
metadata:
  name: apps"""

POD_DEBUG = """apiVersion: v1
kind: Pod
metadata:
  name: debug"""


def docs(*texts):
    return [ManifestDoc.parse(t) for t in texts]


def owner(kind, name, api_version="apps/v1"):
    return k8s_obj(kind=kind, name=name, api_version=api_version)


def pod(name, owners=(), claims=()):
    volumes = [k8s_obj(persistent_volume_claim=k8s_obj(claim_name=c)) for c in claims]
    volumes.append(k8s_obj(persistent_volume_claim=None))
    return k8s_obj(metadata=meta(name, owner_references=list(owners)), spec=k8s_obj(volumes=volumes))


@pytest.mark.unit
class TestComputeDeletions:
    """Tests for compute_deletions function."""

    def test_removed_documents_in_deletion_order(self):
        previous = docs(CONFIGMAP_SETTINGS, SERVICE_WEB, DEPLOYMENT_WEB)
        current = docs(DEPLOYMENT_WEB)

        deletions = compute_deletions(previous, current, "default")

        assert [d.kind for d in deletions] == ["Service", "ConfigMap"]

    def test_namespace_defaulting_affects_identity(self):
        """Test that the same document in another target namespace is a different object."""
        previous = docs(SERVICE_WEB)
        current = docs(SERVICE_WEB.replace("name: web", "name: web\n  namespace: default"))

        assert compute_deletions(previous, current, "default") == []
        assert len(compute_deletions(previous, docs(), "default")) == 1

    def test_duplicates_deleted_once(self):
        assert len(compute_deletions(docs(SERVICE_WEB, SERVICE_WEB), [], "default")) == 1

    def test_moved_namespace_kept(self):
        deletions = compute_deletions(docs(NAMESPACE_APPS), [], "default", additional_namespaces=["apps"])

        assert deletions == []

    def test_restore_keeps_objects_outside_selector(self):
        labelled = SERVICE_WEB.replace("name: web", "name: web\n  labels:\n    app: web")
        previous = docs(labelled, CONFIGMAP_SETTINGS)

        deletions = compute_deletions(
            previous,
            [],
            "default",
            is_restore=True,
            restore_label_selector=LabelSelector(match_labels={"app": "web"}),
        )

        assert [d.kind for d in deletions] == ["Service"]


@pytest.mark.unit
class TestPodOwnership:
    """Tests for pod_owned_by and pod_claims."""

    def test_direct_owner(self):
        assert pod_owned_by(pod("db-0", [owner("StatefulSet", "db")]), "StatefulSet", "apps", "db") is True

    def test_deployment_through_replicaset(self):
        p = pod("web-abc-xyz", [owner("ReplicaSet", "web-7d9f")])

        assert pod_owned_by(p, "Deployment", "apps", "web") is True
        assert pod_owned_by(p, "Deployment", "apps", "we") is False

    def test_cronjob_through_job(self):
        p = pod("backup-1-x", [owner("Job", "backup-2812", api_version="batch/v1")])

        assert pod_owned_by(p, "CronJob", "batch", "backup") is True

    def test_group_must_match(self):
        p = pod("web-0", [owner("StatefulSet", "web", api_version="example.com/v1")])

        assert pod_owned_by(p, "StatefulSet", "apps", "web") is False

    def test_pod_claims(self):
        assert pod_claims(pod("x", claims=["data", "logs"])) == ["data", "logs"]


@pytest.fixture
def kubectl():
    mock = MagicMock()
    mock.remove = AsyncMock(return_value=CommandResult(success=True, stdout="deleted"))
    return mock


@pytest.mark.unit
class TestManifestRemover:
    """Tests for ManifestRemover class."""

    async def test_collects_claims_before_deleting(self, kubectl, mock_clients, audit):
        """Test that claims of a removed deployment's pods are returned."""
        mock_clients.core_v1.list_namespaced_pod.return_value = k8s_obj(
            items=[
                pod("web-1-a", [owner("ReplicaSet", "web-1")], claims=["data"]),
                pod("web-1-b", [owner("ReplicaSet", "web-1")], claims=["data"]),
                pod("api-1-a", [owner("ReplicaSet", "api-1")], claims=["other"]),
            ]
        )
        remover = ManifestRemover(kubectl, mock_clients, audit)

        claims = await remover.remove(docs(DEPLOYMENT_WEB), "default", wait=True)

        assert claims == [("default", "data")]
        kubectl.remove.assert_awaited_once_with("default", DEPLOYMENT_WEB, True)

    async def test_pvc_never_waits(self, kubectl, mock_clients, audit):
        remover = ManifestRemover(kubectl, mock_clients, audit)

        await remover.remove(docs(PVC_DATA), "default", wait=True)

        kubectl.remove.assert_awaited_once_with("default", PVC_DATA, False)
        mock_clients.core_v1.list_namespaced_pod.assert_not_awaited()

    async def test_missing_pod_has_no_claims(self, kubectl, mock_clients, audit):
        mock_clients.core_v1.read_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        remover = ManifestRemover(kubectl, mock_clients, audit)

        assert await remover.claims_for(docs(POD_DEBUG)[0], "default") == []

    async def test_claim_lookup_failure_still_deletes(self, kubectl, mock_clients, audit):
        mock_clients.core_v1.list_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")
        remover = ManifestRemover(kubectl, mock_clients, audit)

        claims = await remover.remove(docs(DEPLOYMENT_WEB), "default", wait=False)

        assert claims == []
        kubectl.remove.assert_awaited_once()

    async def test_failed_delete_is_audited_and_continues(self, kubectl, mock_clients, audit, tmp_path):
        kubectl.remove.side_effect = [
            CommandResult(success=False, stderr="forbidden", returncode=1),
            CommandResult(success=True),
        ]
        remover = ManifestRemover(kubectl, mock_clients, audit)

        await remover.remove(docs(SERVICE_WEB, CONFIGMAP_SETTINGS), "default", wait=False)

        entries = [json.loads(line) for line in (tmp_path / "audit.log").read_text().splitlines()]
        assert [(e["target"], e["result"]) for e in entries] == [
            ("default/Service/web", "failed"),
            ("other/ConfigMap/settings", "success"),
        ]
        assert kubectl.remove.await_args_list[1].args[0] == "other"
