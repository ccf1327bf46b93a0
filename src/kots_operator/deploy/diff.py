# ABOUTME: Previous-vs-current manifest diff and removal of stale objects
# ABOUTME: Collects PVCs of deleted workloads so they can be cleared afterwards

"""
Manifest diff engine.

compute_deletions() is pure: it decides WHICH previous documents disappear.
ManifestRemover does the cluster work: it deletes those documents through
kubectl in deletion-plan order and, before each workload goes, records the
PersistentVolumeClaims its pods mount (once the pods are gone, the link is
lost).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.deploy.manifests import kept_by_restore, order_for_deletion
from kots_operator.kube import is_not_found

if TYPE_CHECKING:
    from collections.abc import Iterable

    from kots_operator.applier import Kubectl
    from kots_operator.deploy.manifests import LabelSelector, ManifestDoc
    from kots_operator.kube import KubeClients
    from kots_operator.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

# Kinds whose pods' claims are collected: kind -> API group
PVC_OWNER_KINDS = {
    "Deployment": "apps",
    "StatefulSet": "apps",
    "Job": "batch",
    "CronJob": "batch",
    "Pod": "",
}

# Pods of these kinds are owned through an intermediate object named "<name>-<suffix>".
_INDIRECT_OWNERS = {
    "Deployment": ("ReplicaSet", "apps"),
    "CronJob": ("Job", "batch"),
}


def compute_deletions(
    previous: list[ManifestDoc],
    current: list[ManifestDoc],
    target_namespace: str,
    additional_namespaces: Iterable[str] = (),
    is_restore: bool = False,
    restore_label_selector: LabelSelector | None = None,
) -> list[ManifestDoc]:
    """
    Documents present in `previous` but not in `current`, in deletion order.

    A previous document is kept (not deleted) when:
    - it is a Namespace that moved to the additional namespaces, or
    - this is a restore and the object is not part of the backup.
    """
    current_keys = {doc.key(target_namespace) for doc in current}
    moved_namespaces = set(additional_namespaces)
    seen = set()
    deletions = []

    for doc in previous:
        key = doc.key(target_namespace)
        if key in current_keys or key in seen:
            continue
        seen.add(key)
        if doc.kind == "Namespace" and doc.api_version == "v1" and doc.name in moved_namespaces:
            continue
        if kept_by_restore(doc.labels, is_restore, restore_label_selector):
            continue
        deletions.append(doc)

    return order_for_deletion(deletions)


def _api_group(api_version: str | None) -> str:
    if api_version and "/" in api_version:
        return api_version.split("/", 1)[0]
    return ""


def pod_owned_by(pod: Any, kind: str, group: str, name: str) -> bool:
    """Whether a pod is owned by the object directly or through its ReplicaSet/Job."""
    indirect = _INDIRECT_OWNERS.get(kind)
    for ref in pod.metadata.owner_references or []:
        ref_group = _api_group(ref.api_version)
        if ref.kind == kind and ref_group == group and ref.name == name:
            return True
        if indirect and ref.kind == indirect[0] and ref_group == indirect[1] and ref.name.startswith(f"{name}-"):
            return True
    return False


def pod_claims(pod: Any) -> list[str]:
    return [
        volume.persistent_volume_claim.claim_name
        for volume in pod.spec.volumes or []
        if volume.persistent_volume_claim is not None
    ]


class ManifestRemover:
    """Deletes stale documents and reports the claims their pods used."""

    def __init__(self, kubectl: Kubectl, clients: KubeClients, audit: AuditLogger) -> None:
        self._kubectl = kubectl
        self._clients = clients
        self._audit = audit

    async def claims_for(self, doc: ManifestDoc, namespace: str) -> list[str]:
        """PVC names mounted by the pods belonging to `doc`."""
        group = PVC_OWNER_KINDS.get(doc.kind)
        if group is None or doc.group != group:
            return []

        if doc.kind == "Pod":
            try:
                pod = await self._clients.core_v1.read_namespaced_pod(doc.name, namespace)
            except ApiException as e:
                if is_not_found(e):
                    return []
                raise
            return pod_claims(pod)

        pods = await self._clients.core_v1.list_namespaced_pod(namespace)
        claims: list[str] = []
        for pod in pods.items or []:
            if pod_owned_by(pod, doc.kind, group, doc.name):
                claims.extend(pod_claims(pod))
        return claims

    async def remove(self, docs: list[ManifestDoc], target_namespace: str, wait: bool) -> list[tuple[str, str]]:
        """
        Delete each document with kubectl.

        Failures are logged and audited; the remaining documents are still
        deleted.

        Returns:
            (namespace, claim name) pairs used by the deleted workloads.
        """
        claims: list[tuple[str, str]] = []
        for doc in docs:
            namespace = doc.effective_namespace(target_namespace)
            target = doc.describe(target_namespace)

            try:
                for claim in await self.claims_for(doc, namespace):
                    if (namespace, claim) not in claims:
                        claims.append((namespace, claim))
            except ApiException as e:
                logger.warning("Failed to list PVCs", target=target, status=e.status, reason=e.reason)

            # Waiting on a PVC that a still-running pod mounts never finishes.
            doc_wait = False if doc.kind == "PersistentVolumeClaim" else wait

            logger.info("Deleting manifest", target=target, api_version=doc.api_version)
            result = await self._kubectl.remove(namespace, doc.raw, doc_wait)
            if result.success:
                logger.info("Manifest deleted", target=target)
                self._audit.log_success("delete_manifest", target)
            else:
                logger.warning(
                    "Failed to delete manifest",
                    target=target,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    returncode=result.returncode,
                )
                self._audit.log_failed("delete_manifest", target, result.stderr)
        return claims
