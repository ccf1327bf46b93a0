# ABOUTME: Exception hierarchy for the KOTS operator
# ABOUTME: Separates transport failures, control plane errors, and hard deploy failures

"""Operator exceptions.

Application-level failures (a kubectl apply that exits non-zero, a failing
dry run) are NOT exceptions: they travel as CommandResult values and end up
in the deploy report. Everything here either aborts the current connection
attempt (ChannelError) or the current deploy attempt (the hard failures).
"""

from __future__ import annotations


class OperatorError(Exception):
    """Base class for all operator errors."""


class ChannelError(OperatorError):
    """Control channel transport failure; triggers a reconnect."""


class UnknownCommandError(ChannelError):
    """An inbound event name has no registered command type."""

    def __init__(self, event: str) -> None:
        self.event = event
        super().__init__(f"unknown command event {event!r}")


class CommandDecodeError(ChannelError):
    """An inbound event payload does not match its command schema."""

    def __init__(self, event: str, reason: str) -> None:
        self.event = event
        self.reason = reason
        super().__init__(f"failed to decode {event!r} payload: {reason}")


class ControlPlaneError(OperatorError):
    """Unexpected HTTP reply from the control plane."""

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"control plane error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class ManifestDecodeError(OperatorError):
    """Manifests could not be base64 decoded or parsed as YAML."""


class BinaryNotFoundError(OperatorError):
    """A required executable (kubectl, kustomize, helm) is missing."""

    def __init__(self, name: str, version: str | None = None) -> None:
        self.name = name
        self.version = version
        wanted = f"{name} {version}" if version else name
        super().__init__(f"failed to find {wanted}")


class NamespaceClearTimeoutError(OperatorError):
    """Objects owned by an app were still present after the drain budget."""

    def __init__(self, namespace: str, slug: str) -> None:
        self.namespace = namespace
        self.slug = slug
        super().__init__(f"failed to clear app {slug} from namespace {namespace}")


class ProtocolError(ChannelError):
    """A websocket frame is not a valid engine or socket packet."""


class ChartError(OperatorError):
    """A chart archive could not be unpacked or a release could not be removed."""


class MonitorClosedError(OperatorError):
    """Informers were sent to a monitor that has already been shut down."""

    def __init__(self, app_id: str) -> None:
        self.app_id = app_id
        super().__init__(f"monitor for app {app_id} is shut down")
