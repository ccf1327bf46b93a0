# ABOUTME: Operator entry point wiring settings, Kubernetes clients, coordinator, monitor and control channel
# ABOUTME: Reconnects to the control plane forever with a flat backoff

"""
KOTS Operator.

=============================================================================
LIFECYCLE
=============================================================================

    main()
      load settings, configure logging
      Operator.run()
        hooks controller for the target namespace
        loop:
          connect()
            dial the control channel
            new Monitor + StatusReporter for this connection
            no CONNECT event within 2s -> give up on this attempt
            wait until the channel closes
            tear down monitor and reporter
          sleep 2s

The dispatcher outlives connections: deploys that are running when the
channel drops finish and report over HTTP.

=============================================================================
CONFIGURATION
=============================================================================

    KOTSADM_API_ENDPOINT       control plane base URL (required)
    KOTSADM_TOKEN              connection token (required)
    KOTSADM_TARGET_NAMESPACE   namespace for "." deploys (default: default)

See config.py for the KOTS_OPERATOR_* settings.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from kots_operator import __version__
from kots_operator.applier import ApplierFactory
from kots_operator.appstate import Monitor, StatusInformer, StatusReporter
from kots_operator.channel.client import ChannelClient, Dispatcher
from kots_operator.channel.protocol import build_socket_url
from kots_operator.config import load_settings
from kots_operator.deploy.cleanup import NamespaceCleaner
from kots_operator.deploy.coordinator import DeployCoordinator
from kots_operator.deploy.namespaces import NamespaceWatcher
from kots_operator.errors import ChannelError, MonitorClosedError
from kots_operator.hooks import HooksController
from kots_operator.kube import ClusterConnection, KubeClients, load_configuration
from kots_operator.utils.client import ControlPlaneClient
from kots_operator.utils.logging import AuditLogger, configure_logging

if TYPE_CHECKING:
    from collections.abc import Callable

    from kots_operator.channel.commands import AppInformersCommand
    from kots_operator.config import OperatorSettings

logger = structlog.get_logger(__name__)

RECONNECT_BACKOFF = 2.0
CONNECTION_WAIT = 2.0


class Operator:
    """One control loop per cluster connection."""

    def __init__(
        self,
        settings: OperatorSettings,
        clients: KubeClients,
        connection: ClusterConnection,
        audit: AuditLogger,
        channel_factory: Callable[..., Any] = ChannelClient,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._channel_factory = channel_factory
        self._api = ControlPlaneClient(
            settings.api_endpoint,
            settings.token.get_secret_value(),
            settings.request_timeout,
        )
        self.hooks = HooksController(clients, audit)
        self.namespace_watcher = NamespaceWatcher(clients, self.hooks)
        self.coordinator = DeployCoordinator(
            settings,
            clients,
            ApplierFactory(settings.binaries, connection),
            self._api,
            cleaner=NamespaceCleaner(clients, audit),
            hooks=self.hooks,
            namespace_watcher=self.namespace_watcher,
            audit=audit,
        )
        self.dispatcher = Dispatcher(
            on_deploy=self.coordinator.deploy,
            on_undeploy=self.coordinator.undeploy,
            on_app_informers=self.apply_app_informers,
        )
        self.monitor: Monitor | None = None

    async def run(self) -> None:
        """Connect, and reconnect, until cancelled."""
        async with self._api:
            self.hooks.run(self._settings.target_namespace)
            self.dispatcher.start()
            try:
                while True:
                    try:
                        await self.connect()
                    except ChannelError as e:
                        logger.error("Unable to connect to control plane", error=str(e))
                    await asyncio.sleep(RECONNECT_BACKOFF)
            finally:
                await self.dispatcher.close()
                await self.namespace_watcher.stop()
                await self.hooks.shutdown()

    async def connect(self) -> None:
        """
        Serve one connection until it ends.

        Raises:
            ChannelError: If the websocket cannot be opened.
        """
        url = build_socket_url(self._settings.api_endpoint, self._settings.token.get_secret_value())
        channel = self._channel_factory(
            url,
            self.dispatcher.dispatch,
            on_connection=self._on_connected,
            on_disconnection=self._on_disconnected,
        )

        logger.info("Connecting to control plane", endpoint=self._settings.api_endpoint)
        await channel.dial()

        monitor = self.monitor = Monitor(self._clients, self._settings.target_namespace)
        reporter = asyncio.create_task(
            StatusReporter(self._api, monitor.app_status_queue).run(),
            name="status-reporter",
        )
        try:
            try:
                await asyncio.wait_for(channel.connected.wait(), CONNECTION_WAIT)
            except TimeoutError:
                logger.warning("Expected to be connected to the control plane by now (will retry)")
                return
            await channel.wait_closed()
            logger.info("Disconnected from control plane (will reconnect)")
        finally:
            self.monitor = None
            await monitor.shutdown()
            reporter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reporter
            await channel.close()

    def _on_connected(self) -> None:
        logger.info("Received a connection event")

    def _on_disconnected(self, reason: str) -> None:
        logger.info("Received a disconnected event", reason=reason)

    async def apply_app_informers(self, cmd: AppInformersCommand) -> None:
        """Parse informer strings; unparseable ones are skipped."""
        informers = []
        for value in cmd.informers:
            try:
                informers.append(StatusInformer.parse(value))
            except ValueError as e:
                logger.warning("Failed to parse informer", informer=value, error=str(e))

        if not informers:
            return
        if self.monitor is None:
            logger.warning("No active connection, dropping informers", app_id=cmd.app_id)
            return
        try:
            await self.monitor.apply(cmd.app_id, cmd.sequence, informers)
        except MonitorClosedError:
            logger.warning("Connection closed while applying informers, dropping them", app_id=cmd.app_id)


async def serve(settings: OperatorSettings) -> None:
    cfg = await load_configuration(settings.kubeconfig)
    clients = KubeClients.from_configuration(cfg)
    try:
        operator = Operator(
            settings,
            clients,
            ClusterConnection.from_configuration(cfg),
            AuditLogger(settings.audit_log),
        )
        await operator.run()
    finally:
        await clients.close()


def main() -> None:
    """Run the KOTS operator."""
    try:
        settings = load_settings()
    except ValidationError as e:
        configure_logging(level="INFO")
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    configure_logging(level=settings.log_level, json_output=settings.log_json)
    if not settings.api_endpoint or not settings.token.get_secret_value():
        logger.error("KOTSADM_API_ENDPOINT and KOTSADM_TOKEN are required")
        sys.exit(1)

    logger.info("KOTS operator starting", version=__version__, target_namespace=settings.target_namespace)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Operator interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Operator error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
