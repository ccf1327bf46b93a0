# ABOUTME: Helm chart component of a deploy: unpack archives, uninstall removed charts, install current ones
# ABOUTME: Install output is accumulated per chart with a header line naming the chart

"""
Helm charts.

Deploy commands carry charts as base64 tar.gz archives laid out as

    charts/<chart-dir>/Chart.yaml

A chart directory present in the previous archive but not in the current one
was removed: its release (named after the directory) is uninstalled. Every
chart in the current archive is then installed or upgraded under the name
from its Chart.yaml.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import tarfile
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import yaml

from kots_operator.errors import ChartError
from kots_operator.utils.client import CommandOutput

if TYPE_CHECKING:
    from kots_operator.applier import Helm
    from kots_operator.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

CHARTS_DIR = "charts"


def extract_charts(encoded: str, dest: Path) -> Path | None:
    """
    Unpack a base64 tar.gz archive into `dest`.

    Returns:
        `dest`, or None when the archive is empty.

    Raises:
        ChartError: If the archive is not valid base64 / tar.gz or escapes `dest`.
    """
    if not encoded:
        return None
    try:
        data = base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ChartError(f"failed to decode chart archive: {e}") from e

    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            archive.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise ChartError(f"failed to unarchive charts: {e}") from e
    return dest


def chart_dirs(root: Path | None) -> list[str]:
    """Sorted chart directory names under root/charts."""
    if root is None:
        return []
    charts = root / CHARTS_DIR
    if not charts.is_dir():
        return []
    return sorted(entry.name for entry in charts.iterdir() if entry.is_dir())


def removed_charts(previous: Path | None, current: Path | None) -> list[str]:
    """Chart directories of the previous archive that the current one no longer has."""
    still_present = set(chart_dirs(current))
    return [name for name in chart_dirs(previous) if name not in still_present]


def chart_name(chart_dir: Path) -> str:
    """
    Raises:
        ChartError: If Chart.yaml is missing or has no name.
    """
    chart_file = chart_dir / "Chart.yaml"
    try:
        info = yaml.safe_load(chart_file.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ChartError(f"failed to parse {chart_file}: {e}") from e
    name = info.get("name") if isinstance(info, dict) else None
    if not name:
        raise ChartError(f"{chart_file} has no chart name")
    return str(name)


class ChartDeployer:
    """Runs the helm part of deploys and undeploys."""

    def __init__(self, helm: Helm, audit: AuditLogger) -> None:
        self._helm = helm
        self._audit = audit

    async def uninstall(self, releases: list[str], namespace: str) -> None:
        """
        Uninstall releases; already missing releases are skipped.

        Raises:
            ChartError: For any other helm failure.
        """
        for release in releases:
            result = await self._helm.uninstall(release, namespace)
            logger.info("helm uninstall finished", release=release, stdout=result.stdout, stderr=result.stderr)
            if result.success:
                self._audit.log_success("helm_uninstall", release, {"namespace": namespace})
                continue
            if "not found" in result.stderr:
                continue
            self._audit.log_failed("helm_uninstall", release, result.stderr)
            raise ChartError(f"failed to uninstall chart {release}: {result.stderr}")

    async def install(self, root: Path, namespace: str) -> CommandOutput:
        """`helm upgrade -i` every chart; failures are recorded, not raised."""
        output = CommandOutput()
        for dirname in chart_dirs(root):
            chart_dir = root / CHARTS_DIR / dirname
            name = chart_name(chart_dir)
            result = await self._helm.upgrade_install(name, chart_dir, namespace)
            if result.success:
                self._audit.log_success("helm_install", name, {"namespace": namespace})
            else:
                logger.warning(
                    "helm install failed",
                    chart=name,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    returncode=result.returncode,
                )
                self._audit.log_failed("helm_install", name, result.stderr)
            output.add(result.stdout, result.stderr, failed=not result.success, header=f"------- {name} -------")
        return output

    async def deploy(self, previous: str, current: str, namespace: str) -> CommandOutput | None:
        """
        Uninstall removed charts, then install the current ones.

        Returns:
            Install output, or None when the command carries no current charts.

        Raises:
            ChartError: On archive or uninstall failures.
        """
        with tempfile.TemporaryDirectory(prefix="kots-charts-") as tmp:
            previous_root = await asyncio.to_thread(extract_charts, previous, Path(tmp, "previous"))
            current_root = await asyncio.to_thread(extract_charts, current, Path(tmp, "current"))

            removed = removed_charts(previous_root, current_root)
            if removed:
                logger.info("Uninstalling removed charts", charts=removed)
                await self.uninstall(removed, namespace)

            if current_root is None:
                return None
            return await self.install(current_root, namespace)

    async def undeploy(self, charts: str, namespace: str) -> None:
        with tempfile.TemporaryDirectory(prefix="kots-charts-") as tmp:
            root = await asyncio.to_thread(extract_charts, charts, Path(tmp, "charts"))
            await self.uninstall(chart_dirs(root), namespace)
