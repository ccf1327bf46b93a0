# ABOUTME: Control-plane HTTP client with retry logic and error handling
# ABOUTME: Sends deploy results, undeploy results, and application status upstream

"""
Control-plane client.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The operator talks to the control plane over two paths:

1. The websocket channel (kots_operator.channel), which delivers commands.
2. Plain HTTP PUTs, implemented here, which carry results back:

    PUT <endpoint><result_callback>   deploy / undeploy result   -> 200
    PUT <endpoint>/api/v1/appstatus   application health          -> 204

Both use HTTP basic auth with an EMPTY username and the connection token as
the password.

=============================================================================
DEPLOY REPORTS
=============================================================================

A deploy accumulates output from three phases (dry run, apply, helm), each
possibly run several times (once per namespace, once per chart). The pieces
are joined with newlines. The control plane expects the joined outputs as
base64 strings, the JSON encoding of raw byte arrays:

    {"appId": "...", "isError": false,
     "dryrunStdout": "<b64>", "dryrunStderr": "<b64>",
     "applyStdout": "<b64>",  "applyStderr": "<b64>",
     "helmStdout": "<b64>",   "helmStderr": "<b64>"}
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kots_operator.errors import ControlPlaneError

if TYPE_CHECKING:
    from kots_operator.appstate.types import AppStatus

logger = structlog.get_logger(__name__)

APP_STATUS_PATH = "/api/v1/appstatus"


# =============================================================================
# REPORT DATA CLASSES
# =============================================================================


@dataclass
class CommandOutput:
    """
    Accumulated output of one deploy phase.

    Every invocation appends its non-empty stdout/stderr; has_error becomes
    true as soon as one invocation fails.
    """

    has_error: bool = False
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)

    def add(self, stdout: str, stderr: str, failed: bool = False, header: str | None = None) -> None:
        """
        Append one invocation's output.

        Args:
            stdout: Captured standard output.
            stderr: Captured standard error.
            failed: Whether the invocation failed.
            header: Line inserted before each non-empty stream (helm uses the chart name).
        """
        if stdout:
            if header:
                self.stdout.append(header)
            self.stdout.append(stdout)
        if stderr:
            if header:
                self.stderr.append(header)
            self.stderr.append(stderr)
        self.has_error = self.has_error or failed

    @classmethod
    def from_error(cls, error: Exception | str) -> CommandOutput:
        """Output standing in for a phase that aborted with a hard error."""
        return cls(has_error=True, stdout=[], stderr=[str(error)])

    @property
    def joined_stdout(self) -> str:
        return "\n".join(self.stdout)

    @property
    def joined_stderr(self) -> str:
        return "\n".join(self.stderr)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


@dataclass
class DeployReport:
    """Outcome of one deploy command as sent to the result callback."""

    app_id: str
    dry_run: CommandOutput | None = None
    apply: CommandOutput | None = None
    helm: CommandOutput | None = None

    @property
    def is_error(self) -> bool:
        return any(part.has_error for part in (self.dry_run, self.apply, self.helm) if part is not None)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"appId": self.app_id, "isError": self.is_error}
        for prefix, part in (("dryrun", self.dry_run), ("apply", self.apply), ("helm", self.helm)):
            part = part or CommandOutput()
            body[f"{prefix}Stdout"] = _b64(part.joined_stdout)
            body[f"{prefix}Stderr"] = _b64(part.joined_stderr)
        return body


# =============================================================================
# CONTROL PLANE CLIENT
# =============================================================================


class ControlPlaneClient:
    """
    Async control-plane client with retry logic.

    ALWAYS use the context manager pattern:
        async with ControlPlaneClient(endpoint, token) as client:
            await client.put_app_status(status)

    RETRY LOGIC:
    ------------
    Timeouts and transport errors are retried with exponential backoff
    (3 attempts). A reply with an unexpected status code is NOT retried: it
    becomes a ControlPlaneError right away.
    """

    def __init__(self, api_endpoint: str, token: str, timeout: float = 30.0) -> None:
        """
        Initialize control-plane client.

        Args:
            api_endpoint: Base URL without trailing slash, e.g. "http://kotsadm:3000".
            token: Connection token, sent as the basic auth password.
            timeout: HTTP request timeout in seconds.
        """
        self._api_endpoint = api_endpoint
        self._token = token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ControlPlaneClient:
        self._client = httpx.AsyncClient(
            base_url=self._api_endpoint,
            auth=httpx.BasicAuth("", self._token),
            headers={"Content-Type": "application/json"},
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _put(self, path: str, body: dict[str, Any], expected_status: int) -> None:
        """
        PUT a JSON body and check the status code.

        Raises:
            ControlPlaneError: If the reply status is not expected_status.
            RuntimeError: If the client is used outside 'async with'.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        logger.debug("Control plane request", method="PUT", path=path)
        response = await self._client.put(path, json=body)

        if response.status_code != expected_status:
            raise ControlPlaneError(
                code=response.status_code,
                message=f"unexpected status code from control plane: {response.status_code}",
                details=response.text[:200] or None,
            )

    async def put_deploy_result(self, callback: str, report: DeployReport) -> None:
        """Send a deploy report to the command's result callback."""
        logger.info("Reporting deploy results", callback=callback, is_error=report.is_error)
        await self._put(callback, report.to_dict(), 200)

    async def put_undeploy_result(self, callback: str, app_id: str, is_error: bool) -> None:
        """Send an undeploy outcome to the command's result callback."""
        logger.info("Reporting undeploy result", callback=callback, is_error=is_error)
        await self._put(callback, {"appId": app_id, "isError": is_error}, 200)

    async def put_app_status(self, status: AppStatus) -> None:
        """Send an application health snapshot."""
        await self._put(APP_STATUS_PATH, status.to_dict(), 204)
