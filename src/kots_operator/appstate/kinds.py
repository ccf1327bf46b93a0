# ABOUTME: Per-kind health predicates and informer-backed controllers
# ABOUTME: Deployment, StatefulSet, Service, Ingress, and PersistentVolumeClaim state computation

"""Per-kind controllers.

Every controller has the same shape: an Informer over the kind's typed list
call in one namespace, and handlers that turn each object into a
ResourceState and hand it to `emit`. Objects that are not in the tracked
StatusInformer set are ignored. Deleted objects are always "missing".
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

import structlog
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.appstate.informer import Informer
from kots_operator.appstate.types import ResourceState, State, StatusInformer, min_state, register_kind
from kots_operator.kube import is_not_found

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from kots_operator.kube import KubeClients

logger = structlog.get_logger(__name__)

DEFAULT_BACKEND_NAMESPACE = "kube-system"
DEFAULT_BACKEND_SERVICE = "default-http-backend"


# =============================================================================
# HEALTH PREDICATES
# =============================================================================


def replicas_state(desired: int | None, ready: int | None) -> State:
    """Shared rule for Deployments and StatefulSets."""
    if desired is None:
        desired = 1
    ready = ready or 0
    if ready >= desired:
        return State.READY
    if ready > 0:
        return State.DEGRADED
    return State.UNAVAILABLE


def deployment_state(deployment: Any) -> State:
    return replicas_state(deployment.spec.replicas, deployment.status.ready_replicas if deployment.status else 0)


def statefulset_state(statefulset: Any) -> State:
    return replicas_state(statefulset.spec.replicas, statefulset.status.ready_replicas if statefulset.status else 0)


def endpoints_state(endpoints: Any) -> State:
    """Ready when every endpoint address is ready; degraded when some are not."""
    subsets = endpoints.subsets or []
    ready = sum(len(s.addresses or []) for s in subsets)
    not_ready = sum(len(s.not_ready_addresses or []) for s in subsets)
    if ready == 0:
        return State.UNAVAILABLE
    if not_ready > 0:
        return State.DEGRADED
    return State.READY


def load_balancer_state(status: Any) -> State:
    """Ready once a load balancer reports an IP or hostname."""
    lb = getattr(status, "load_balancer", None) if status else None
    for entry in (lb.ingress if lb else None) or []:
        if entry.ip or entry.hostname:
            return State.READY
    return State.UNAVAILABLE


def pvc_state(pvc: Any) -> State:
    phase = pvc.status.phase if pvc.status else None
    if phase == "Bound":
        return State.READY
    if phase == "Pending":
        return State.DEGRADED
    return State.UNAVAILABLE


def ingress_backend_services(ingress: Any) -> tuple[tuple[str, str] | None, list[tuple[str, str]]]:
    """
    Services an Ingress routes to.

    Returns:
        (default backend or None when unset, rule path backends); each entry
        is (namespace, service name). Resource backends are skipped.
    """
    namespace = ingress.metadata.namespace
    spec = ingress.spec
    default = None
    if spec.default_backend and spec.default_backend.service:
        default = (namespace, spec.default_backend.service.name)

    paths: list[tuple[str, str]] = []
    for rule in spec.rules or []:
        if not rule.http:
            continue
        for path in rule.http.paths or []:
            if path.backend and path.backend.service:
                paths.append((namespace, path.backend.service.name))
    return default, paths


# =============================================================================
# CONTROLLERS
# =============================================================================


class KindController:
    """Base controller: informer plumbing and tracked-set filtering."""

    kind: ClassVar[str]
    aliases: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        clients: KubeClients,
        namespace: str,
        informers: Iterable[StatusInformer],
        emit: Callable[[ResourceState], Awaitable[None]],
    ) -> None:
        self._clients = clients
        self._namespace = namespace
        self._tracked = {(i.namespace, i.name) for i in informers}
        self._emit = emit

    def list_func(self) -> Callable[..., Awaitable[Any]]:
        raise NotImplementedError

    async def compute_state(self, obj: Any) -> State:
        raise NotImplementedError

    def informer(self) -> Informer:
        return Informer(
            self.list_func(),
            name=self.kind,
            namespace=self._namespace,
            on_add=self._on_change,
            on_update=self._on_update,
            on_delete=self._on_delete,
        )

    async def run(self) -> None:
        await self.informer().run()

    def _is_tracked(self, obj: Any) -> bool:
        return (obj.metadata.namespace, obj.metadata.name) in self._tracked

    def _resource_state(self, obj: Any, state: State) -> ResourceState:
        return ResourceState(
            kind=self.kind,
            name=obj.metadata.name,
            namespace=obj.metadata.namespace,
            state=state,
        )

    async def _on_change(self, obj: Any) -> None:
        if not self._is_tracked(obj):
            return
        await self._emit(self._resource_state(obj, await self.compute_state(obj)))

    async def _on_update(self, _old: Any, new: Any) -> None:
        await self._on_change(new)

    async def _on_delete(self, obj: Any) -> None:
        if not self._is_tracked(obj):
            return
        await self._emit(self._resource_state(obj, State.MISSING))


class DeploymentController(KindController):
    kind = "deployment"
    aliases = ("deployments", "deploy")

    def list_func(self) -> Callable[..., Awaitable[Any]]:
        return self._clients.apps_v1.list_namespaced_deployment

    async def compute_state(self, obj: Any) -> State:
        return deployment_state(obj)


class StatefulSetController(KindController):
    kind = "statefulset"
    aliases = ("statefulsets", "sts")

    def list_func(self) -> Callable[..., Awaitable[Any]]:
        return self._clients.apps_v1.list_namespaced_stateful_set

    async def compute_state(self, obj: Any) -> State:
        return statefulset_state(obj)


class PersistentVolumeClaimController(KindController):
    kind = "persistentvolumeclaim"
    aliases = ("persistentvolumeclaims", "pvc")

    def list_func(self) -> Callable[..., Awaitable[Any]]:
        return self._clients.core_v1.list_namespaced_persistent_volume_claim

    async def compute_state(self, obj: Any) -> State:
        return pvc_state(obj)


async def service_endpoints_state(clients: KubeClients, namespace: str, name: str) -> State | None:
    """Endpoint-derived state of a service, or None when it does not exist."""
    try:
        endpoints = await clients.core_v1.read_namespaced_endpoints(name, namespace)
    except ApiException as e:
        if is_not_found(e):
            return None
        raise
    return endpoints_state(endpoints)


class ServiceController(KindController):
    kind = "service"
    aliases = ("services", "svc")

    def list_func(self) -> Callable[..., Awaitable[Any]]:
        return self._clients.core_v1.list_namespaced_service

    async def compute_state(self, obj: Any) -> State:
        state = await service_endpoints_state(self._clients, obj.metadata.namespace, obj.metadata.name)
        states = [state if state is not None else State.UNAVAILABLE]
        if obj.spec.type == "LoadBalancer":
            states.append(load_balancer_state(obj.status))
        return min_state(*states)


class IngressController(KindController):
    kind = "ingress"
    aliases = ("ingresses", "ing")

    def list_func(self) -> Callable[..., Awaitable[Any]]:
        return self._clients.networking_v1.list_namespaced_ingress

    async def compute_state(self, obj: Any) -> State:
        default, paths = ingress_backend_services(obj)
        states: list[State] = []

        if default is None:
            fallback = await service_endpoints_state(
                self._clients, DEFAULT_BACKEND_NAMESPACE, DEFAULT_BACKEND_SERVICE
            )
            # Clusters without the conventional default backend don't count against the ingress.
            if fallback is not None:
                states.append(fallback)
        else:
            state = await service_endpoints_state(self._clients, *default)
            states.append(state if state is not None else State.UNAVAILABLE)

        for namespace, name in paths:
            state = await service_endpoints_state(self._clients, namespace, name)
            states.append(state if state is not None else State.UNAVAILABLE)

        states.append(load_balancer_state(obj.status))
        return min_state(*states)


CONTROLLERS: dict[str, type[KindController]] = {}

for _controller in (
    DeploymentController,
    StatefulSetController,
    ServiceController,
    IngressController,
    PersistentVolumeClaimController,
):
    register_kind(_controller.kind, *_controller.aliases)
    CONTROLLERS[_controller.kind] = _controller
