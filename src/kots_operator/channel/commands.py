# ABOUTME: Typed command payloads received over the control channel
# ABOUTME: Decodes named events into the DeployCommand / UndeployCommand / AppInformersCommand union

"""
Control channel commands.

Each event name maps to exactly one pydantic model. The JSON keys are the
control plane's snake_case names, so the models need no aliases (apart from
the label selector, which uses Kubernetes' camelCase).

    decode_command("deploy", {...})        -> DeployCommand
    decode_command("appInformers", {...})  -> AppInformersCommand
    decode_command("preflight", {...})     -> UnknownCommandError
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kots_operator.deploy.manifests import LabelSelector  # noqa: TC001 - Required at runtime for Pydantic
from kots_operator.errors import CommandDecodeError, UnknownCommandError

# Events the legacy control plane may still send; they are logged and dropped.
IGNORED_EVENTS = frozenset({"preflight", "supportbundle"})


class _Command(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator(
        "additional_namespaces",
        "clear_namespaces",
        "informers",
        mode="before",
        check_fields=False,
    )
    @classmethod
    def null_as_empty_list(cls, v: Any) -> Any:
        # Nil slices arrive as JSON null.
        return [] if v is None else v


class DeployCommand(_Command):
    """Desired state of one application."""

    app_id: str
    app_slug: str = ""
    kubectl_version: str = ""
    additional_namespaces: list[str] = Field(default_factory=list)
    image_pull_secret: str = ""
    namespace: str = "."
    previous_manifests: str = ""
    manifests: str = ""
    previous_charts: str = ""
    charts: str = ""
    wait: bool = False
    result_callback: str = ""
    clear_namespaces: list[str] = Field(default_factory=list)
    clear_pvcs: bool = False
    annotate_slug: bool = False
    is_restore: bool = False
    restore_label_selector: LabelSelector | None = None


class UndeployCommand(_Command):
    """Remove everything an application deployed."""

    app_id: str
    app_slug: str = ""
    kubectl_version: str = ""
    additional_namespaces: list[str] = Field(default_factory=list)
    namespace: str = "."
    manifests: str = ""
    charts: str = ""
    wait: bool = False
    result_callback: str = ""
    clear_namespaces: list[str] = Field(default_factory=list)
    clear_pvcs: bool = False
    is_restore: bool = False
    restore_label_selector: LabelSelector | None = None


class AppInformersCommand(_Command):
    """Resources whose health the control plane wants reported."""

    app_id: str
    sequence: int = 0
    informers: list[str] = Field(default_factory=list)


Command = DeployCommand | UndeployCommand | AppInformersCommand

COMMAND_TYPES: dict[str, type[_Command]] = {
    "deploy": DeployCommand,
    "undeploy": UndeployCommand,
    "appInformers": AppInformersCommand,
}


def decode_command(event: str, payload: Any) -> Command:
    """
    Decode one inbound event.

    Raises:
        UnknownCommandError: If no command is registered under `event`.
        CommandDecodeError: If the payload does not validate.
    """
    model = COMMAND_TYPES.get(event)
    if model is None:
        raise UnknownCommandError(event)
    try:
        return model.model_validate(payload)  # type: ignore[return-value]
    except ValidationError as e:
        raise CommandDecodeError(event, str(e)) from e
