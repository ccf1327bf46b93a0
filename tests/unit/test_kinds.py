# ABOUTME: Unit tests for per-kind health predicates and controllers
# ABOUTME: Tests replica, endpoint, load balancer, PVC, and ingress rules plus tracked-set filtering

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from conftest import k8s_obj, meta
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.appstate import ResourceState, State, StatusInformer
from kots_operator.appstate.kinds import (
    CONTROLLERS,
    DeploymentController,
    IngressController,
    ServiceController,
    endpoints_state,
    ingress_backend_services,
    load_balancer_state,
    pvc_state,
    replicas_state,
)


def endpoints(ready=0, not_ready=0):
    subset = k8s_obj(addresses=[object()] * ready, not_ready_addresses=[object()] * not_ready)
    return k8s_obj(subsets=[subset])


def lb_status(*entries):
    return k8s_obj(load_balancer=k8s_obj(ingress=list(entries)))


def deployment(name, replicas=1, ready=1, namespace="default"):
    return k8s_obj(
        metadata=meta(name, namespace),
        spec=k8s_obj(replicas=replicas),
        status=k8s_obj(ready_replicas=ready),
    )


def backend(service):
    return k8s_obj(service=k8s_obj(name=service))


def ingress(default=None, paths=(), status=None):
    rules = [k8s_obj(http=k8s_obj(paths=[k8s_obj(backend=backend(p)) for p in paths]))] if paths else None
    return k8s_obj(
        metadata=meta("web", "default"),
        spec=k8s_obj(default_backend=backend(default) if default else None, rules=rules),
        status=status or lb_status(k8s_obj(ip="10.0.0.9", hostname=None)),
    )


@pytest.mark.unit
class TestPredicates:
    """Tests for the pure health rules."""

    def test_replicas_ready(self):
        assert replicas_state(3, 3) == State.READY

    def test_replicas_degraded(self):
        assert replicas_state(3, 1) == State.DEGRADED

    def test_replicas_unavailable(self):
        assert replicas_state(3, None) == State.UNAVAILABLE

    def test_replicas_default_to_one(self):
        """Test that an unset replica count means one desired replica."""
        assert replicas_state(None, 1) == State.READY
        assert replicas_state(None, 0) == State.UNAVAILABLE

    def test_endpoints(self):
        assert endpoints_state(endpoints(ready=2)) == State.READY
        assert endpoints_state(endpoints(ready=1, not_ready=1)) == State.DEGRADED
        assert endpoints_state(endpoints(not_ready=2)) == State.UNAVAILABLE
        assert endpoints_state(k8s_obj(subsets=None)) == State.UNAVAILABLE

    def test_load_balancer(self):
        assert load_balancer_state(lb_status(k8s_obj(ip=None, hostname="lb.example.com"))) == State.READY
        assert load_balancer_state(lb_status(k8s_obj(ip=None, hostname=None))) == State.UNAVAILABLE
        assert load_balancer_state(lb_status()) == State.UNAVAILABLE
        assert load_balancer_state(None) == State.UNAVAILABLE

    @pytest.mark.parametrize(
        ("phase", "expected"),
        [("Bound", State.READY), ("Pending", State.DEGRADED), ("Lost", State.UNAVAILABLE)],
    )
    def test_pvc(self, phase, expected):
        assert pvc_state(k8s_obj(status=k8s_obj(phase=phase))) == expected

    def test_ingress_backend_services(self):
        default, paths = ingress_backend_services(ingress(default="fallback", paths=["web", "api"]))

        assert default == ("default", "fallback")
        assert paths == [("default", "web"), ("default", "api")]

    def test_ingress_without_default(self):
        default, paths = ingress_backend_services(ingress(paths=["web"]))

        assert default is None
        assert paths == [("default", "web")]


@pytest.mark.unit
class TestControllerRegistry:
    """Tests for the registered controllers."""

    def test_every_kind_has_a_controller(self):
        assert set(CONTROLLERS) == {"deployment", "statefulset", "service", "ingress", "persistentvolumeclaim"}


@pytest.mark.unit
class TestKindController:
    """Tests for tracked-set filtering and emitted states."""

    async def test_tracked_object_emits_state(self, mock_clients):
        """Test that a tracked deployment emits its computed state."""
        emit = AsyncMock()
        controller = DeploymentController(mock_clients, "default", [StatusInformer("deployment", "web", "default")], emit)

        await controller._on_change(deployment("web", replicas=2, ready=1))

        emit.assert_awaited_once_with(ResourceState("deployment", "web", "default", State.DEGRADED))

    async def test_untracked_object_ignored(self, mock_clients):
        emit = AsyncMock()
        controller = DeploymentController(mock_clients, "default", [StatusInformer("deployment", "web", "default")], emit)

        await controller._on_change(deployment("api"))

        emit.assert_not_awaited()

    async def test_delete_emits_missing(self, mock_clients):
        emit = AsyncMock()
        controller = DeploymentController(mock_clients, "default", [StatusInformer("deployment", "web", "default")], emit)

        await controller._on_delete(deployment("web"))

        emit.assert_awaited_once_with(ResourceState("deployment", "web", "default", State.MISSING))

    async def test_update_uses_new_object(self, mock_clients):
        emit = AsyncMock()
        controller = DeploymentController(mock_clients, "default", [StatusInformer("deployment", "web", "default")], emit)

        await controller._on_update(deployment("web", ready=0), deployment("web", ready=1))

        emit.assert_awaited_once_with(ResourceState("deployment", "web", "default", State.READY))

    def test_informer_uses_typed_list_call(self, mock_clients):
        controller = DeploymentController(mock_clients, "apps", [], AsyncMock())

        assert controller.list_func() is mock_clients.apps_v1.list_namespaced_deployment


@pytest.mark.unit
class TestServiceController:
    """Tests for service state computation."""

    async def test_cluster_ip_uses_endpoints(self, mock_clients):
        mock_clients.core_v1.read_namespaced_endpoints.return_value = endpoints(ready=1)
        controller = ServiceController(mock_clients, "default", [], AsyncMock())
        service = k8s_obj(metadata=meta("web"), spec=k8s_obj(type="ClusterIP"), status=None)

        assert await controller.compute_state(service) == State.READY
        mock_clients.core_v1.read_namespaced_endpoints.assert_awaited_once_with("web", "default")

    async def test_load_balancer_without_address(self, mock_clients):
        """Test that a LoadBalancer service waits for its external address."""
        mock_clients.core_v1.read_namespaced_endpoints.return_value = endpoints(ready=1)
        controller = ServiceController(mock_clients, "default", [], AsyncMock())
        service = k8s_obj(metadata=meta("web"), spec=k8s_obj(type="LoadBalancer"), status=lb_status())

        assert await controller.compute_state(service) == State.UNAVAILABLE

    async def test_missing_endpoints_unavailable(self, mock_clients):
        mock_clients.core_v1.read_namespaced_endpoints.side_effect = ApiException(status=404, reason="Not Found")
        controller = ServiceController(mock_clients, "default", [], AsyncMock())
        service = k8s_obj(metadata=meta("web"), spec=k8s_obj(type="ClusterIP"), status=None)

        assert await controller.compute_state(service) == State.UNAVAILABLE


@pytest.mark.unit
class TestIngressController:
    """Tests for ingress state computation."""

    async def test_worst_backend_wins(self, mock_clients):
        by_name = {"web": endpoints(ready=1), "api": endpoints(ready=1, not_ready=1)}
        mock_clients.core_v1.read_namespaced_endpoints.side_effect = lambda name, namespace: by_name[name]
        controller = IngressController(mock_clients, "default", [], AsyncMock())

        state = await controller.compute_state(ingress(default="web", paths=["api"]))

        assert state == State.DEGRADED

    async def test_missing_cluster_default_backend_ignored(self, mock_clients):
        """Test that the conventional default backend only counts when it exists."""

        def read(name, namespace):
            if (namespace, name) == ("kube-system", "default-http-backend"):
                raise ApiException(status=404, reason="Not Found")
            return endpoints(ready=1)

        mock_clients.core_v1.read_namespaced_endpoints.side_effect = read
        controller = IngressController(mock_clients, "default", [], AsyncMock())

        assert await controller.compute_state(ingress(paths=["web"])) == State.READY

    async def test_no_load_balancer_address(self, mock_clients):
        mock_clients.core_v1.read_namespaced_endpoints.return_value = endpoints(ready=1)
        controller = IngressController(mock_clients, "default", [], AsyncMock())

        state = await controller.compute_state(ingress(default="web", status=SimpleNamespace(load_balancer=None)))

        assert state == State.UNAVAILABLE
