# ABOUTME: Unit tests for control channel command decoding
# ABOUTME: Tests the event-to-model mapping, null handling, and decode errors

import pytest

from kots_operator.channel.commands import (
    IGNORED_EVENTS,
    AppInformersCommand,
    DeployCommand,
    UndeployCommand,
    decode_command,
)
from kots_operator.errors import ChannelError, CommandDecodeError, UnknownCommandError


@pytest.mark.unit
class TestDecodeCommand:
    """Tests for decode_command function."""

    def test_deploy(self):
        """Test decoding a full deploy payload."""
        command = decode_command(
            "deploy",
            {
                "app_id": "app-1",
                "app_slug": "my-app",
                "kubectl_version": "1.29",
                "additional_namespaces": ["apps"],
                "namespace": ".",
                "manifests": "YQ==",
                "wait": True,
                "result_callback": "/api/v1/deploy/result",
                "clear_namespaces": None,
                "clear_pvcs": True,
                "annotate_slug": True,
                "is_restore": True,
                "restore_label_selector": {"matchLabels": {"app": "web"}},
                "unknown_field": "ignored",
            },
        )

        assert isinstance(command, DeployCommand)
        assert command.app_slug == "my-app"
        assert command.additional_namespaces == ["apps"]
        assert command.clear_namespaces == []
        assert command.wait is True
        assert command.restore_label_selector.match_labels == {"app": "web"}

    def test_deploy_defaults(self):
        command = decode_command("deploy", {"app_id": "app-1"})

        assert command.namespace == "."
        assert command.manifests == ""
        assert command.previous_manifests == ""
        assert command.clear_pvcs is False
        assert command.restore_label_selector is None

    def test_undeploy(self):
        command = decode_command("undeploy", {"app_id": "app-1", "manifests": "YQ==", "charts": ""})

        assert isinstance(command, UndeployCommand)
        assert command.manifests == "YQ=="

    def test_app_informers_null_list(self):
        command = decode_command("appInformers", {"app_id": "app-1", "sequence": 7, "informers": None})

        assert isinstance(command, AppInformersCommand)
        assert command.sequence == 7
        assert command.informers == []

    def test_unknown_event(self):
        with pytest.raises(UnknownCommandError) as exc_info:
            decode_command("explode", {})

        assert exc_info.value.event == "explode"
        assert isinstance(exc_info.value, ChannelError)

    def test_missing_app_id(self):
        with pytest.raises(CommandDecodeError) as exc_info:
            decode_command("deploy", {"manifests": ""})

        assert exc_info.value.event == "deploy"
        assert "app_id" in exc_info.value.reason

    def test_payload_not_an_object(self):
        with pytest.raises(CommandDecodeError):
            decode_command("appInformers", "app-1")

    def test_legacy_events_are_not_commands(self):
        """Test that ignored events are not registered as commands."""
        for event in IGNORED_EVENTS:
            with pytest.raises(UnknownCommandError):
                decode_command(event, {})
