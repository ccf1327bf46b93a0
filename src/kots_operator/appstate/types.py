# ABOUTME: Data model for application health reporting
# ABOUTME: States, the worst-wins aggregation, status informers, and the app status reducer

"""
Application state types.

=============================================================================
STATES AND AGGREGATION
=============================================================================

Every tracked resource is in one of four states. When several states are
combined (an Ingress and its backends, or a whole application) the WORST one
wins:

    missing  >  unavailable  >  degraded  >  ready

min_state() implements that reduction. It is commutative and idempotent, so
watch events for different kinds may arrive in any order and the aggregate
still converges to the same answer. With nothing to aggregate the answer is
"missing": an app with no observed resources is not healthy.

=============================================================================
STATUS INFORMERS
=============================================================================

The control plane names the resources it wants tracked with strings like:

    "deployment/web"              -> kind=deployment, name=web, namespace=<target>
    "myapp/deploy/web"            -> kind=deployment, name=web, namespace=myapp
    "svc/web"                     -> kind=service,    name=web

Kind aliases are canonicalized through a registry that each per-kind
controller populates when its module is imported.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class State(str, Enum):
    """Health of one resource or of a whole application."""

    READY = "ready"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    MISSING = "missing"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    State.READY: 0,
    State.DEGRADED: 1,
    State.UNAVAILABLE: 2,
    State.MISSING: 3,
}


def min_state(*states: State) -> State:
    """
    Reduce states to the single worst one.

    Examples:
        >>> min_state(State.READY, State.DEGRADED)
        <State.DEGRADED: 'degraded'>
        >>> min_state()
        <State.MISSING: 'missing'>
    """
    if not states:
        return State.MISSING
    return max(states, key=lambda s: s.severity)


# =============================================================================
# KIND REGISTRY
# =============================================================================

_KIND_ALIASES: dict[str, str] = {}


def register_kind(canonical: str, *aliases: str) -> None:
    """
    Register a canonical kind name and the aliases that map to it.

    Called at import time by each per-kind controller module.
    """
    canonical = canonical.lower()
    _KIND_ALIASES[canonical] = canonical
    for alias in aliases:
        _KIND_ALIASES[alias.lower()] = canonical


def canonical_kind(kind: str) -> str:
    """Return the canonical name for a kind; unknown kinds are lowercased."""
    lowered = kind.lower()
    return _KIND_ALIASES.get(lowered, lowered)


def registered_kinds() -> set[str]:
    """Canonical kinds that have a controller."""
    return set(_KIND_ALIASES.values())


# =============================================================================
# RESOURCES
# =============================================================================


@dataclass(frozen=True)
class StatusInformer:
    """One resource whose health the control plane wants tracked."""

    kind: str
    name: str
    namespace: str = ""

    @classmethod
    def parse(cls, value: str) -> StatusInformer:
        """
        Parse "[namespace/]kind/name".

        Raises:
            ValueError: If the string has fewer than two or more than three parts,
                        or any part is empty.
        """
        parts = value.split("/")
        if len(parts) == 2:
            namespace, (kind, name) = "", parts
        elif len(parts) == 3:
            namespace, kind, name = parts
        else:
            raise ValueError(f"status informer format string incorrect: {value!r}")
        if not kind or not name:
            raise ValueError(f"status informer format string incorrect: {value!r}")
        return cls(kind=canonical_kind(kind), name=name, namespace=namespace)

    def normalize(self, target_namespace: str) -> StatusInformer:
        """Canonicalize the kind and default the namespace."""
        return StatusInformer(
            kind=canonical_kind(self.kind),
            name=self.name,
            namespace=self.namespace or target_namespace,
        )


@dataclass(frozen=True)
class ResourceState:
    """Observed state of one resource. Identity is (kind, name, namespace)."""

    kind: str
    name: str
    namespace: str
    state: State = State.MISSING

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.kind, self.name, self.namespace)

    def matches(self, other: ResourceState) -> bool:
        return self.sort_key == other.sort_key

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
            "state": self.state.value,
        }


def sort_resource_states(states: list[ResourceState]) -> list[ResourceState]:
    """Sort by kind, then name, then namespace (a total order)."""
    return sorted(states, key=lambda s: s.sort_key)


def resource_states_apply_new(
    states: list[ResourceState],
    new: ResourceState,
) -> tuple[list[ResourceState], bool]:
    """
    Replace the entry matching `new` if its state differs.

    Resources that are not already tracked are ignored; the tracked set is
    fixed when informers are applied.

    Returns:
        (sorted states, whether anything changed)
    """
    changed = False
    result: list[ResourceState] = []
    for existing in states:
        if existing.matches(new) and existing.state != new.state:
            result.append(replace(existing, state=new.state))
            changed = True
        else:
            result.append(existing)
    return sort_resource_states(result), changed


# =============================================================================
# APP STATUS
# =============================================================================


@dataclass(frozen=True)
class AppStatus:
    """Health snapshot of one application. Replaced wholesale on change."""

    app_id: str
    resource_states: tuple[ResourceState, ...] = ()
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    sequence: int = 0

    @property
    def state(self) -> State:
        return min_state(*(s.state for s in self.resource_states))

    def to_dict(self) -> dict[str, Any]:
        return {
            "appId": self.app_id,
            "resourceStates": [s.to_dict() for s in self.resource_states],
            "updatedAt": self.updated_at.isoformat().replace("+00:00", "Z"),
            "sequence": self.sequence,
            "state": self.state.value,
        }

    def content_hash(self) -> str:
        """Hash of everything except the timestamp."""
        body = self.to_dict()
        body.pop("updatedAt")
        return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()
