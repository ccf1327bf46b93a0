# ABOUTME: Unit tests for the control-plane client
# ABOUTME: Tests report encoding, basic auth, expected status codes, and retry behavior

import base64
import json

import httpx
import pytest
import respx
from tenacity import wait_none

from kots_operator.appstate import AppStatus, ResourceState, State
from kots_operator.errors import ControlPlaneError
from kots_operator.utils.client import CommandOutput, ControlPlaneClient, DeployReport

BASE_URL = "http://kotsadm:3000"


def decode(value: str) -> str:
    return base64.b64decode(value).decode()


@pytest.mark.unit
class TestCommandOutput:
    """Tests for CommandOutput accumulation."""

    def test_add_skips_empty_streams(self):
        output = CommandOutput()

        output.add("created", "")
        output.add("", "warning")

        assert output.stdout == ["created"]
        assert output.stderr == ["warning"]
        assert output.has_error is False

    def test_failure_is_sticky(self):
        output = CommandOutput()

        output.add("", "boom", failed=True)
        output.add("ok", "")

        assert output.has_error is True

    def test_header_precedes_each_stream(self):
        """Test that helm-style headers are written before stdout and stderr."""
        output = CommandOutput()

        output.add("installed", "warn", header="------- web -------")

        assert output.joined_stdout == "------- web -------\ninstalled"
        assert output.joined_stderr == "------- web -------\nwarn"

    def test_from_error(self):
        output = CommandOutput.from_error(RuntimeError("cluster unreachable"))

        assert output.has_error is True
        assert output.joined_stderr == "cluster unreachable"


@pytest.mark.unit
class TestDeployReport:
    """Tests for DeployReport serialization."""

    def test_to_dict_base64_encodes_outputs(self):
        apply = CommandOutput()
        apply.add("deployment.apps/web created", "")
        apply.add("service/web created", "")
        report = DeployReport(app_id="app-1", dry_run=CommandOutput(), apply=apply)

        body = report.to_dict()

        assert body["appId"] == "app-1"
        assert body["isError"] is False
        assert decode(body["applyStdout"]) == "deployment.apps/web created\nservice/web created"
        assert body["dryrunStdout"] == ""
        assert body["helmStdout"] == ""
        assert body["helmStderr"] == ""

    def test_is_error_from_any_phase(self):
        helm = CommandOutput()
        helm.add("", "release failed", failed=True)

        assert DeployReport(app_id="app-1", helm=helm).is_error is True
        assert DeployReport(app_id="app-1").is_error is False


@pytest.mark.unit
class TestControlPlaneClient:
    """Tests for ControlPlaneClient requests."""

    async def test_requires_context_manager(self):
        client = ControlPlaneClient(BASE_URL, "token")

        with pytest.raises(RuntimeError, match="async with"):
            await client.put_app_status(AppStatus("app-1"))

    @respx.mock
    async def test_put_app_status(self):
        """Test that status goes to the appstatus path with basic auth."""
        route = respx.put(f"{BASE_URL}/api/v1/appstatus").mock(return_value=httpx.Response(204))
        status = AppStatus("app-1", (ResourceState("service", "web", "default", State.READY),), sequence=2)

        async with ControlPlaneClient(BASE_URL, "secret") as client:
            await client.put_app_status(status)

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b":secret").decode()
        body = json.loads(request.content)
        assert body["appId"] == "app-1"
        assert body["sequence"] == 2
        assert body["resourceStates"][0]["state"] == "ready"

    @respx.mock
    async def test_put_app_status_wrong_code(self):
        """Test that 200 is rejected where 204 is expected."""
        respx.put(f"{BASE_URL}/api/v1/appstatus").mock(return_value=httpx.Response(200, text="ok"))

        async with ControlPlaneClient(BASE_URL, "secret") as client:
            with pytest.raises(ControlPlaneError) as exc_info:
                await client.put_app_status(AppStatus("app-1"))

        assert exc_info.value.code == 200
        assert exc_info.value.details == "ok"

    @respx.mock
    async def test_put_deploy_result(self):
        route = respx.put(f"{BASE_URL}/api/v1/deploy/result").mock(return_value=httpx.Response(200))
        report = DeployReport(app_id="app-1", apply=CommandOutput.from_error("denied"))

        async with ControlPlaneClient(BASE_URL, "secret") as client:
            await client.put_deploy_result("/api/v1/deploy/result", report)

        body = json.loads(route.calls.last.request.content)
        assert body["isError"] is True
        assert decode(body["applyStderr"]) == "denied"

    @respx.mock
    async def test_put_undeploy_result(self):
        route = respx.put(f"{BASE_URL}/api/v1/undeploy/result").mock(return_value=httpx.Response(200))

        async with ControlPlaneClient(BASE_URL, "secret") as client:
            await client.put_undeploy_result("/api/v1/undeploy/result", "app-1", False)

        assert json.loads(route.calls.last.request.content) == {"appId": "app-1", "isError": False}

    @respx.mock
    async def test_server_error_not_retried(self):
        route = respx.put(f"{BASE_URL}/api/v1/appstatus").mock(return_value=httpx.Response(500))

        async with ControlPlaneClient(BASE_URL, "secret") as client:
            with pytest.raises(ControlPlaneError):
                await client.put_app_status(AppStatus("app-1"))

        assert route.call_count == 1

    @respx.mock
    async def test_transport_errors_retried(self, monkeypatch):
        """Test that connection failures are retried before succeeding."""
        monkeypatch.setattr(ControlPlaneClient._put.retry, "wait", wait_none())
        route = respx.put(f"{BASE_URL}/api/v1/appstatus").mock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(204)]
        )

        async with ControlPlaneClient(BASE_URL, "secret") as client:
            await client.put_app_status(AppStatus("app-1"))

        assert route.call_count == 2
