"""Library for installing and upgrading the monitoring chart with `helm`.

The chart repository is configured in a private repository config file, so
the user's own helm configuration is never touched:
```python
from monitoring_lifecycle.helm import HelmChartManager, ChartRepository

charts = HelmChartManager(
    Path("/tmp/helm"),
    Path("/tmp/helm-cache"),
    ChartRepository("rancher-charts", "https://charts.rancher.io"),
)
state = await charts.status("cattle-monitoring-system", "rancher-monitoring")
if not state.is_installed:
    await charts.install(options, MonitoringFeatures())
```

The CRD chart is always installed or upgraded to the same version before the
main chart.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import datetime
import json
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from . import command
from .exceptions import InstallError
from .manifest import (
    ChartInstallOptions,
    InstallationState,
    MonitoringFeatures,
    MONITORING_CHART,
    MONITORING_CRD_CHART,
    MONITORING_NAMESPACE,
)

__all__ = [
    "ChartManager",
    "ChartRepository",
    "HelmChartManager",
]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"
DEFAULT_INSTALL_TIMEOUT = 600.0


class ChartManager(ABC):
    """Interface for installing, upgrading and inspecting a packaged chart."""

    @abstractmethod
    async def install(
        self, options: ChartInstallOptions, features: MonitoringFeatures
    ) -> None:
        """Install the chart at `options.version`."""

    @abstractmethod
    async def upgrade(
        self, options: ChartInstallOptions, features: MonitoringFeatures
    ) -> None:
        """Upgrade the installed chart to `options.version`."""

    @abstractmethod
    async def status(self, namespace: str, name: str) -> InstallationState:
        """Return the current install state of a chart release."""

    @abstractmethod
    async def list_versions(self, name: str) -> list[str]:
        """Return the published versions of a chart, newest first."""

    async def latest_version(self, name: str) -> str:
        """Return the newest published version of a chart."""
        if not (versions := await self.list_versions(name)):
            raise InstallError(f"No published versions found for chart {name}")
        return versions[0]


@dataclass(frozen=True)
class ChartRepository:
    """A helm chart repository the charts are pulled from."""

    name: str
    url: str

    def chart_ref(self, chart: str) -> str:
        return f"{self.name}/{chart}"


def repository_config(repos: list[ChartRepository]) -> dict[str, Any]:
    """Return a synthetic helm repository config object."""
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    return {
        "apiVersion": "",
        "generated": now.isoformat(),
        "repositories": [
            {
                "name": repo.name,
                "url": repo.url,
            }
            for repo in repos
        ],
    }


def chart_values(
    options: ChartInstallOptions, features: MonitoringFeatures
) -> dict[str, Any]:
    """Return the chart values for a cluster and set of integrations."""
    # Rancher charts expect the project without the cluster prefix
    _, _, system_project = options.project_id.rpartition(":")
    return {
        "global": {
            "cattle": {
                "clusterId": options.cluster_id,
                "clusterName": options.cluster_name,
                "systemProjectId": system_project,
            },
        },
        **features.values(),
    }


def _release_version(release: dict[str, Any], name: str) -> str | None:
    """Return the chart version from a `helm list` entry.

    The entry names the chart and version together e.g. `rancher-monitoring-102.0.0+up40.1.2`.
    Pre-release versions may contain dashes too, so strip the known chart name.
    """
    chart = release.get("chart") or ""
    if not chart.startswith(f"{name}-"):
        return None
    return chart[len(name) + 1 :]


class HelmChartManager(ChartManager):
    """ChartManager that drives the `helm` command line tool."""

    def __init__(
        self,
        tmp_dir: Path,
        cache_dir: Path,
        repo: ChartRepository,
        namespace: str = MONITORING_NAMESPACE,
        chart: str = MONITORING_CHART,
        crd_chart: str = MONITORING_CRD_CHART,
        timeout: float = DEFAULT_INSTALL_TIMEOUT,
        kubeconfig: str | None = None,
        kube_context: str | None = None,
    ) -> None:
        """Initialize HelmChartManager."""
        self._tmp_dir = tmp_dir
        self._repo = repo
        self._namespace = namespace
        self._chart = chart
        self._crd_chart = crd_chart
        self._timeout = timeout
        self._repo_config_file = self._tmp_dir / "repository-config.yaml"
        self._flags = [
            "--repository-cache",
            str(cache_dir),
            "--repository-config",
            str(self._repo_config_file),
        ]
        if kubeconfig:
            self._flags.extend(["--kubeconfig", kubeconfig])
        if kube_context:
            self._flags.extend(["--kube-context", kube_context])
        self._updated = False

    async def _run(self, args: list[str], timeout: float | None = None) -> str:
        cmd = command.Command(
            [HELM_BIN] + args + self._flags,
            exc=InstallError,
            timeout=timeout or command.DEFAULT_TIMEOUT,
        )
        return await command.run(cmd)

    async def update(self) -> None:
        """Write the repository config and update the local repository index.

        The index is only updated once per manager.
        """
        if self._updated:
            return
        content = yaml.dump(repository_config([self._repo]), sort_keys=False)
        async with aiofiles.open(str(self._repo_config_file), mode="w") as config_file:
            await config_file.write(content)
        _LOGGER.debug("Updating chart repository %s (%s)", self._repo.name, self._repo.url)
        await self._run(["repo", "update"])
        self._updated = True

    async def list_versions(self, name: str) -> list[str]:
        """Return the published versions of a chart, newest first."""
        await self.update()
        chart_ref = self._repo.chart_ref(name)
        out = await self._run(
            ["search", "repo", chart_ref, "--versions", "--devel", "--output", "json"]
        )
        try:
            results = json.loads(out or "[]")
        except json.JSONDecodeError as err:
            raise InstallError(f"Unable to parse helm search output: {err}") from err
        # Search matches on substrings, e.g. rancher-monitoring-crd
        return [
            result["version"] for result in results if result.get("name") == chart_ref
        ]

    async def status(self, namespace: str, name: str) -> InstallationState:
        """Return the current install state of a chart release."""
        out = await self._run(
            ["list", "--namespace", namespace, "--filter", f"^{name}$", "--output", "json"]
        )
        try:
            releases = json.loads(out or "[]")
        except json.JSONDecodeError as err:
            raise InstallError(f"Unable to parse helm list output: {err}") from err
        available = await self.list_versions(name)
        if not releases:
            return InstallationState(is_installed=False, available_versions=available)
        release = releases[0]
        if release.get("status") != "deployed":
            _LOGGER.warning(
                "Release %s/%s has status %s", namespace, name, release.get("status")
            )
        return InstallationState(
            is_installed=True,
            installed_version=_release_version(release, name),
            available_versions=available,
        )

    async def _write_values(
        self, release: str, options: ChartInstallOptions, features: MonitoringFeatures
    ) -> Path:
        values_path = self._tmp_dir / f"{release}-values.yaml"
        async with aiofiles.open(values_path, mode="w") as values_file:
            await values_file.write(
                yaml.dump(chart_values(options, features), sort_keys=False)
            )
        return values_path

    async def _apply(
        self,
        chart: str,
        options: ChartInstallOptions,
        features: MonitoringFeatures,
        install: bool,
    ) -> None:
        values_path = await self._write_values(chart, options, features)
        args = ["upgrade", chart, self._repo.chart_ref(chart)]
        if install:
            args.extend(["--install", "--create-namespace"])
        args.extend(
            [
                "--namespace",
                self._namespace,
                "--version",
                options.version,
                "--values",
                str(values_path),
            ]
        )
        _LOGGER.info(
            "%s chart %s version %s",
            "Installing" if install else "Upgrading",
            chart,
            options.version,
        )
        await self._run(args, timeout=self._timeout)

    async def install(
        self, options: ChartInstallOptions, features: MonitoringFeatures
    ) -> None:
        """Install the CRD chart and then the chart at `options.version`."""
        await self.update()
        await self._apply(self._crd_chart, options, features, install=True)
        await self._apply(self._chart, options, features, install=True)

    async def upgrade(
        self, options: ChartInstallOptions, features: MonitoringFeatures
    ) -> None:
        """Upgrade the CRD chart and then the chart to `options.version`."""
        await self.update()
        await self._apply(self._crd_chart, options, features, install=False)
        await self._apply(self._chart, options, features, install=False)
