# ABOUTME: Multi-document manifest parsing, identity keys, and deletion ordering
# ABOUTME: Also holds the label selector used to scope restores

"""
Manifest handling.

=============================================================================
DOCUMENTS
=============================================================================

Deploy commands carry manifests as ONE base64 string holding a multi-document
YAML stream. decode_manifests() turns it into ManifestDoc objects that keep
the raw text (what kubectl receives) next to the parsed mapping (what the
operator inspects).

=============================================================================
IDENTITY
=============================================================================

Two documents describe the same object when apiVersion, kind, name and
namespace agree. A document without a namespace lands in the deploy's target
namespace, so the key defaults the namespace accordingly:

    ResourceKey("apps/v1", "Deployment", "web", "default")

=============================================================================
DELETION ORDER
=============================================================================

Workloads and their front doors go first so nothing restarts pods while
their config disappears; RBAC, CRDs, storage and config go last:

    BEFORE_ALL kinds (in order) -> every other kind -> AFTER_ALL kinds (in order)
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

from kots_operator.errors import ManifestDecodeError

APP_SLUG_ANNOTATION = "kots.io/app-slug"
EXCLUDE_FROM_BACKUP_LABEL = "velero.io/exclude-from-backup"

_SEPARATOR = re.compile(r"^---[ \t]*$", re.MULTILINE)

BEFORE_ALL = (
    "APIService",
    "Ingress",
    "Service",
    "Pod",
    "CronJob",
    "Job",
    "StatefulSet",
    "HorizontalPodAutoscaler",
    "Deployment",
    "ReplicaSet",
    "ReplicationController",
    "DaemonSet",
)

AFTER_ALL = (
    "RoleBinding",
    "Role",
    "ClusterRoleBinding",
    "ClusterRole",
    "CustomResourceDefinition",
    "PersistentVolumeClaim",
    "PersistentVolume",
    "ConfigMap",
    "Secret",
    "ServiceAccount",
    "PodDisruptionBudget",
    "PodSecurityPolicy",
    "LimitRange",
    "ResourceQuota",
)


# =============================================================================
# DOCUMENTS
# =============================================================================


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a Kubernetes object across two manifest revisions."""

    api_version: str
    kind: str
    name: str
    namespace: str


@dataclass(frozen=True)
class ManifestDoc:
    """One YAML document: raw text plus its parsed mapping."""

    raw: str
    obj: dict[str, Any]

    @classmethod
    def parse(cls, raw: str) -> ManifestDoc:
        try:
            obj = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ManifestDecodeError(f"failed to parse manifest: {e}") from e
        if obj is None:
            obj = {}
        if not isinstance(obj, dict):
            raise ManifestDecodeError(f"manifest is not a mapping: {raw[:80]!r}")
        return cls(raw=raw, obj=obj)

    @property
    def metadata(self) -> dict[str, Any]:
        return self.obj.get("metadata") or {}

    @property
    def api_version(self) -> str:
        return self.obj.get("apiVersion") or ""

    @property
    def group(self) -> str:
        if "/" in self.api_version:
            return self.api_version.split("/", 1)[0]
        return ""

    @property
    def kind(self) -> str:
        return self.obj.get("kind") or ""

    @property
    def name(self) -> str:
        return self.metadata.get("name") or ""

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace") or ""

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.get("annotations") or {}

    def effective_namespace(self, target_namespace: str) -> str:
        return self.namespace or target_namespace

    def key(self, target_namespace: str) -> ResourceKey:
        return ResourceKey(self.api_version, self.kind, self.name, self.effective_namespace(target_namespace))

    def describe(self, target_namespace: str) -> str:
        """Short "namespace/Kind/name" label for logs and audit entries."""
        return f"{self.effective_namespace(target_namespace)}/{self.kind}/{self.name}"


def split_documents(text: str) -> list[str]:
    """Split a YAML stream on "---" lines, dropping empty documents."""
    return [doc.strip("\n") for doc in _SEPARATOR.split(text) if doc.strip()]


def parse_documents(text: str) -> list[ManifestDoc]:
    return [ManifestDoc.parse(doc) for doc in split_documents(text)]


def decode_manifests(encoded: str) -> list[ManifestDoc]:
    """
    Decode a base64 multi-document YAML string.

    Raises:
        ManifestDecodeError: On invalid base64, invalid UTF-8 or invalid YAML.
    """
    if not encoded:
        return []
    try:
        text = base64.b64decode(encoded, validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ManifestDecodeError(f"failed to decode manifests: {e}") from e
    return parse_documents(text)


def join_documents(docs: list[ManifestDoc]) -> str:
    return "\n---\n".join(doc.raw for doc in docs) + "\n"


def is_first_apply(doc: ManifestDoc) -> bool:
    """CRDs and Namespaces must exist before anything that refers to them."""
    if doc.kind == "CustomResourceDefinition" and doc.group == "apiextensions.k8s.io":
        return True
    return doc.kind == "Namespace" and doc.api_version == "v1"


def split_first_apply(docs: list[ManifestDoc]) -> tuple[list[ManifestDoc], list[ManifestDoc]]:
    first = [doc for doc in docs if is_first_apply(doc)]
    others = [doc for doc in docs if not is_first_apply(doc)]
    return first, others


def docs_by_namespace(docs: list[ManifestDoc], target_namespace: str) -> dict[str, list[ManifestDoc]]:
    """Group documents by the namespace they will be applied in, in first-seen order."""
    groups: dict[str, list[ManifestDoc]] = {}
    for doc in docs:
        groups.setdefault(doc.effective_namespace(target_namespace), []).append(doc)
    return groups


def deletion_order(kinds: list[str]) -> list[int]:
    """Indices of `kinds` sorted by the deletion plan; ties keep input order."""

    def rank(index: int) -> tuple[int, int, int]:
        kind = kinds[index]
        if kind in BEFORE_ALL:
            return (0, BEFORE_ALL.index(kind), index)
        if kind in AFTER_ALL:
            return (2, AFTER_ALL.index(kind), index)
        return (1, 0, index)

    return sorted(range(len(kinds)), key=rank)


def order_for_deletion(docs: list[ManifestDoc]) -> list[ManifestDoc]:
    return [docs[i] for i in deletion_order([doc.kind for doc in docs])]


# =============================================================================
# LABEL SELECTORS
# =============================================================================


class LabelSelectorRequirement(BaseModel):
    """One matchExpressions entry."""

    key: str
    operator: Literal["In", "NotIn", "Exists", "DoesNotExist"]
    values: list[str] = Field(default_factory=list)

    def matches(self, labels: dict[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "In":
            return present and labels[self.key] in self.values
        if self.operator == "NotIn":
            return not present or labels[self.key] not in self.values
        if self.operator == "Exists":
            return present
        return not present


class LabelSelector(BaseModel):
    """
    Kubernetes label selector.

    An empty selector matches every object.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list, alias="matchExpressions")

    def matches(self, labels: dict[str, str] | None) -> bool:
        labels = labels or {}
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(expr.matches(labels) for expr in self.match_expressions)


def kept_by_restore(labels: dict[str, str] | None, is_restore: bool, selector: LabelSelector | None) -> bool:
    """
    Whether a restore must leave this object alone.

    During a restore only objects that are part of the backup are removed:
    objects labelled as excluded from backup, and objects outside the
    restore's label selector, are kept.
    """
    if not is_restore:
        return False
    labels = labels or {}
    if labels.get(EXCLUDE_FROM_BACKUP_LABEL) == "true":
        return True
    return selector is not None and not selector.matches(labels)
