# ABOUTME: Runs deploy and undeploy commands end to end under a per-app lock
# ABOUTME: Application failures become the deploy report; hard failures are reported as apply/helm errors

"""
Deploy coordinator.

=============================================================================
DEPLOY
=============================================================================

    lock(app_id)
      1. previous manifests      -> delete what disappeared, clear PVCs, drain namespaces
      2. additional namespaces   -> create if missing, image pull secret, hooks (best effort)
      3. first-apply docs?
           no                    -> dry run per namespace; a failure ends the deploy
           yes                   -> apply them, wait for CRDs to register
      4. other docs              -> apply per namespace, keep going on failures
      5. helm charts             -> uninstall removed, install current
      6. report                  -> PUT to result_callback (once, when set)
      7. namespace watcher       -> restart over the additional namespaces

A failing kubectl/helm invocation is part of the report, never an exception.
A hard failure (undecodable manifests, a missing binary, a namespace that
never drains, API errors) stops the deploy; its message becomes the apply
(or helm) stderr and the report is still sent.

=============================================================================
UNDEPLOY
=============================================================================

    lock(app_id) -> uninstall charts -> delete all manifests -> clear PVCs
                 -> drain namespaces -> PUT {appId, isError}
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import TYPE_CHECKING

import aiohttp
import httpx
import structlog
from kubernetes_asyncio.client.rest import ApiException

from kots_operator.deploy.cleanup import delete_pvcs
from kots_operator.deploy.diff import ManifestRemover, compute_deletions
from kots_operator.deploy.helm import ChartDeployer
from kots_operator.deploy.manifests import (
    decode_manifests,
    docs_by_namespace,
    join_documents,
    split_first_apply,
)
from kots_operator.deploy.namespaces import (
    ALL_NAMESPACES,
    ensure_image_pull_secret,
    ensure_namespace_present,
)
from kots_operator.errors import ControlPlaneError, ManifestDecodeError, OperatorError
from kots_operator.utils.client import CommandOutput, DeployReport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from kots_operator.applier import ApplierFactory, Kubectl
    from kots_operator.channel.commands import DeployCommand, UndeployCommand
    from kots_operator.config import OperatorSettings
    from kots_operator.deploy.cleanup import NamespaceCleaner
    from kots_operator.deploy.manifests import ManifestDoc
    from kots_operator.deploy.namespaces import NamespaceWatcher
    from kots_operator.hooks import HooksController
    from kots_operator.kube import KubeClients
    from kots_operator.utils.client import ControlPlaneClient
    from kots_operator.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

# Time for the API server to serve newly registered CRDs.
CRD_SETTLE_SECONDS = 5.0

HARD_FAILURES = (OperatorError, ApiException, aiohttp.ClientError, OSError)


class DeployLockRegistry:
    """Lazily created asyncio.Lock per app."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = threading.Lock()

    def get(self, app_id: str) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(app_id)
            if lock is None:
                lock = self._locks[app_id] = asyncio.Lock()
            return lock

    @contextlib.asynccontextmanager
    async def lock(self, app_id: str) -> AsyncIterator[None]:
        async with self.get(app_id):
            yield


class DeployCoordinator:
    """Applies deploy and undeploy commands to the cluster."""

    def __init__(
        self,
        settings: OperatorSettings,
        clients: KubeClients,
        appliers: ApplierFactory,
        api: ControlPlaneClient,
        *,
        cleaner: NamespaceCleaner,
        hooks: HooksController,
        namespace_watcher: NamespaceWatcher,
        audit: AuditLogger,
        locks: DeployLockRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._appliers = appliers
        self._api = api
        self._cleaner = cleaner
        self._hooks = hooks
        self._namespace_watcher = namespace_watcher
        self._audit = audit
        self._locks = locks or DeployLockRegistry()

    # -------------------------------------------------------------------------
    # DEPLOY
    # -------------------------------------------------------------------------

    async def deploy(self, cmd: DeployCommand) -> DeployReport:
        """Run one deploy command and report it."""
        log = logger.bind(app_id=cmd.app_id, app_slug=cmd.app_slug)
        log.info("Received a deploy request")

        async with self._locks.lock(cmd.app_id):
            report = DeployReport(app_id=cmd.app_id)
            namespace = self._settings.namespace_for(cmd.namespace)

            try:
                await self._deploy_manifests(cmd, namespace, report)
            except HARD_FAILURES as e:
                log.error("Failed to deploy manifests", error=str(e))
                report.apply = CommandOutput.from_error(e)
            else:
                try:
                    report.helm = await self._deploy_charts(cmd, namespace)
                except HARD_FAILURES as e:
                    log.error("Failed to deploy helm charts", error=str(e))
                    report.helm = CommandOutput.from_error(e)

            if report.is_error:
                self._audit.log_error("deploy", cmd.app_slug or cmd.app_id, report_errors(report))
            else:
                self._audit.log_success("deploy", cmd.app_slug or cmd.app_id, {"namespace": namespace})

            await self._send_deploy_report(cmd, report)

            await self._namespace_watcher.apply(cmd.additional_namespaces, cmd.image_pull_secret)
            return report

    async def _deploy_manifests(self, cmd: DeployCommand, namespace: str, report: DeployReport) -> None:
        kubectl = self._appliers.kubectl(cmd.kubectl_version or None)
        current = decode_manifests(cmd.manifests)

        if cmd.previous_manifests:
            previous = decode_manifests(cmd.previous_manifests)
            await self._remove_previous(cmd, kubectl, namespace, previous, current)

        await self._prepare_additional_namespaces(cmd)

        first, others = split_first_apply(current)

        if not first:
            report.dry_run = CommandOutput()
            for ns, docs in docs_by_namespace(current, namespace).items():
                logger.info("Dry run applying manifests", namespace=ns, count=len(docs))
                result = await kubectl.apply(ns, cmd.app_slug, join_documents(docs), True, cmd.wait, cmd.annotate_slug)
                report.dry_run.add(result.stdout, result.stderr, failed=not result.success)
                if not result.success:
                    logger.warning("Dry run failed", namespace=ns, stdout=result.stdout, stderr=result.stderr)
                    return

        report.apply = CommandOutput()
        if first:
            logger.info("Applying first apply docs (CRDs, Namespaces)", count=len(first))
            result = await kubectl.apply("", cmd.app_slug, join_documents(first), False, cmd.wait, cmd.annotate_slug)
            report.apply.add(result.stdout, result.stderr, failed=not result.success)
            if not result.success:
                logger.warning("First apply failed", stdout=result.stdout, stderr=result.stderr)
                return
            await asyncio.sleep(CRD_SETTLE_SECONDS)

        for ns, docs in docs_by_namespace(others, namespace).items():
            logger.info("Applying manifests", namespace=ns, count=len(docs))
            result = await kubectl.apply(ns, cmd.app_slug, join_documents(docs), False, cmd.wait, cmd.annotate_slug)
            if result.success:
                logger.info("Manifests applied", namespace=ns)
            else:
                logger.warning("Apply failed", namespace=ns, stdout=result.stdout, stderr=result.stderr)
            report.apply.add(result.stdout, result.stderr, failed=not result.success)

    async def _remove_previous(
        self,
        cmd: DeployCommand,
        kubectl: Kubectl,
        namespace: str,
        previous: list[ManifestDoc],
        current: list[ManifestDoc],
    ) -> None:
        deletions = compute_deletions(
            previous,
            current,
            namespace,
            cmd.additional_namespaces,
            cmd.is_restore,
            cmd.restore_label_selector,
        )
        await self._remove(cmd, kubectl, deletions, namespace)

    async def _remove(
        self,
        cmd: DeployCommand | UndeployCommand,
        kubectl: Kubectl,
        deletions: list[ManifestDoc],
        namespace: str,
    ) -> None:
        claims = await ManifestRemover(kubectl, self._clients, self._audit).remove(deletions, namespace, cmd.wait)
        if cmd.clear_pvcs and claims:
            await delete_pvcs(self._clients, claims, self._audit)
        if cmd.clear_namespaces:
            await self._cleaner.clear(cmd.app_slug, cmd.clear_namespaces, cmd.is_restore, cmd.restore_label_selector)

    async def _prepare_additional_namespaces(self, cmd: DeployCommand) -> None:
        for ns in cmd.additional_namespaces:
            if ns == ALL_NAMESPACES:
                continue
            try:
                await ensure_namespace_present(self._clients, ns)
            except ApiException as e:
                logger.warning("Failed to create namespace", namespace=ns, status=e.status, reason=e.reason)
            if cmd.image_pull_secret:
                try:
                    await ensure_image_pull_secret(self._clients, ns, cmd.image_pull_secret)
                except (ApiException, ManifestDecodeError) as e:
                    logger.warning("Failed to ensure image pull secret", namespace=ns, error=str(e))
            self._hooks.run(ns)

    async def _deploy_charts(self, cmd: DeployCommand, namespace: str) -> CommandOutput | None:
        if not cmd.previous_charts and not cmd.charts:
            return None
        charts = ChartDeployer(self._appliers.helm(), self._audit)
        return await charts.deploy(cmd.previous_charts, cmd.charts, namespace)

    async def _send_deploy_report(self, cmd: DeployCommand, report: DeployReport) -> None:
        if not cmd.result_callback:
            return
        try:
            await self._api.put_deploy_result(cmd.result_callback, report)
        except (ControlPlaneError, httpx.HTTPError) as e:
            logger.error("Failed to send deploy result", app_id=cmd.app_id, error=str(e))

    # -------------------------------------------------------------------------
    # UNDEPLOY
    # -------------------------------------------------------------------------

    async def undeploy(self, cmd: UndeployCommand) -> bool:
        """
        Remove everything the app deployed.

        Returns:
            True when the undeploy failed.
        """
        log = logger.bind(app_id=cmd.app_id, app_slug=cmd.app_slug)
        log.info("Received an undeploy request")

        async with self._locks.lock(cmd.app_id):
            namespace = self._settings.namespace_for(cmd.namespace)
            is_error = False
            try:
                await self._undeploy(cmd, namespace)
            except HARD_FAILURES as e:
                log.error("Failed to undeploy", error=str(e))
                self._audit.log_error("undeploy", cmd.app_slug or cmd.app_id, str(e))
                is_error = True
            else:
                self._audit.log_success("undeploy", cmd.app_slug or cmd.app_id, {"namespace": namespace})

            if cmd.result_callback:
                try:
                    await self._api.put_undeploy_result(cmd.result_callback, cmd.app_id, is_error)
                except (ControlPlaneError, httpx.HTTPError) as e:
                    log.error("Failed to send undeploy result", error=str(e))
            return is_error

    async def _undeploy(self, cmd: UndeployCommand, namespace: str) -> None:
        if cmd.charts:
            await ChartDeployer(self._appliers.helm(), self._audit).undeploy(cmd.charts, namespace)

        kubectl = self._appliers.kubectl(cmd.kubectl_version or None)
        deletions = compute_deletions(
            decode_manifests(cmd.manifests),
            [],
            namespace,
            cmd.additional_namespaces,
            cmd.is_restore,
            cmd.restore_label_selector,
        )
        await self._remove(cmd, kubectl, deletions, namespace)


def report_errors(report: DeployReport) -> str:
    """stderr of every failed phase, for the audit log."""
    parts = [
        part.joined_stderr
        for part in (report.dry_run, report.apply, report.helm)
        if part is not None and part.has_error and part.joined_stderr
    ]
    return "\n".join(parts) or "deploy failed"
