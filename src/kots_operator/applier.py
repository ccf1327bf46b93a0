# ABOUTME: Subprocess wrapper around kubectl, kustomize, and helm
# ABOUTME: Builds argument lists with cluster connection flags and captures their output

"""
Applier.

The operator never talks to the API server to create app objects itself:
applies and deletions are handed to kubectl (through kustomize for real
applies, so the app-slug annotation can be stamped on every object) and
helm. A non-zero exit is NOT an exception here: it comes back as a
CommandResult with success=False, and the caller decides whether it is
fatal. Only a missing executable raises (BinaryNotFoundError).
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import yaml

from kots_operator.deploy.manifests import APP_SLUG_ANNOTATION
from kots_operator.errors import BinaryNotFoundError

if TYPE_CHECKING:
    from kots_operator.config import BinarySettings
    from kots_operator.kube import ClusterConnection

logger = structlog.get_logger(__name__)


@dataclass
class CommandResult:
    """Result of a command execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


async def run_command(argv: list[str], stdin: str | None = None, cwd: str | Path | None = None) -> CommandResult:
    """
    Run a command to completion and capture its output.

    Raises:
        BinaryNotFoundError: If argv[0] cannot be executed.
    """
    logger.debug("Running command", command=argv[0], args=[a for a in argv[1:] if not a.startswith("--token")])
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        raise BinaryNotFoundError(argv[0]) from e

    stdout, stderr = await process.communicate(input=stdin.encode() if stdin is not None else None)
    return CommandResult(
        success=process.returncode == 0,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        returncode=process.returncode if process.returncode is not None else -1,
    )


def find_binary(name: str, version: str | None = None, search_dir: Path | None = None) -> str:
    """
    Resolve an executable.

    With a version like "1.19.3" and a search directory, "<search_dir>/<name>-v1.19"
    wins when it exists; otherwise the plain name is looked up on PATH.

    Raises:
        BinaryNotFoundError: If neither is available.
    """
    if version and search_dir:
        major_minor = ".".join(version.lstrip("v").split(".")[:2])
        candidate = search_dir / f"{Path(name).name}-v{major_minor}"
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        logger.debug("Versioned binary not found, using default", binary=name, version=version)

    path = shutil.which(name)
    if path is None:
        raise BinaryNotFoundError(name, version)
    return path


class Kubectl:
    """kubectl (and kustomize) bound to one cluster connection."""

    def __init__(self, kubectl: str, kustomize: str, connection: ClusterConnection) -> None:
        self._kubectl = kubectl
        self._kustomize = kustomize
        self._connection = connection

    async def _base_args(self, namespace: str | None) -> list[str]:
        argv = [self._kubectl, *await self._connection.kubectl_flags()]
        if namespace and namespace != ".":
            argv += ["--namespace", namespace]
        return argv

    async def apply(
        self,
        namespace: str,
        slug: str,
        docs: str,
        dry_run: bool = False,
        wait: bool = False,
        annotate_slug: bool = False,
    ) -> CommandResult:
        """
        Apply a multi-document YAML string.

        Dry runs go straight to the server (`kubectl apply --dry-run=server`).
        Real applies are rendered through kustomize first, which adds the
        app-slug annotation when requested.
        """
        if dry_run:
            argv = [*await self._base_args(namespace), "apply", "--dry-run=server", "-f", "-"]
            return await run_command(argv, stdin=docs)

        with tempfile.TemporaryDirectory(prefix="kots-apply-") as tmp:
            Path(tmp, "manifests.yaml").write_text(docs)
            kustomization: dict[str, object] = {
                "apiVersion": "kustomize.config.k8s.io/v1beta1",
                "kind": "Kustomization",
                "resources": ["manifests.yaml"],
            }
            if annotate_slug:
                kustomization["commonAnnotations"] = {APP_SLUG_ANNOTATION: slug}
            Path(tmp, "kustomization.yaml").write_text(yaml.safe_dump(kustomization))

            built = await run_command([self._kustomize, "build", tmp])
            if not built.success:
                return built

        argv = [*await self._base_args(namespace), "apply"]
        if wait:
            argv.append("--wait")
        argv += ["-f", "-"]
        return await run_command(argv, stdin=built.stdout)

    async def remove(self, namespace: str, doc: str, wait: bool = False) -> CommandResult:
        argv = [
            *await self._base_args(namespace),
            "delete",
            "--ignore-not-found",
            f"--wait={'true' if wait else 'false'}",
            "-f",
            "-",
        ]
        return await run_command(argv, stdin=doc)


class Helm:
    """helm CLI for chart installs and uninstalls."""

    def __init__(self, helm: str) -> None:
        self._helm = helm

    @staticmethod
    def _namespace_args(namespace: str | None) -> list[str]:
        if namespace and namespace != ".":
            return ["-n", namespace]
        return []

    async def upgrade_install(self, release: str, chart_dir: str | Path, namespace: str | None) -> CommandResult:
        argv = [self._helm, "upgrade", "-i", release, str(chart_dir), *self._namespace_args(namespace)]
        logger.info("Running helm", args=argv[1:])
        return await run_command(argv)

    async def uninstall(self, release: str, namespace: str | None) -> CommandResult:
        argv = [self._helm, "uninstall", release, *self._namespace_args(namespace)]
        logger.info("Running helm", args=argv[1:])
        return await run_command(argv)


class ApplierFactory:
    """Resolves binaries per deploy (kubectl may be pinned to a version)."""

    def __init__(self, binaries: BinarySettings, connection: ClusterConnection) -> None:
        self._binaries = binaries
        self._connection = connection

    def kubectl(self, version: str | None = None) -> Kubectl:
        """
        Raises:
            BinaryNotFoundError: If kubectl or kustomize is missing.
        """
        return Kubectl(
            find_binary(self._binaries.kubectl, version, self._binaries.search_dir),
            find_binary(self._binaries.kustomize),
            self._connection,
        )

    def helm(self) -> Helm:
        return Helm(find_binary(self._binaries.helm))
