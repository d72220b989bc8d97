"""Tests for the monitoring-lifecycle command line tool."""

from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager
import json
import pathlib
import tempfile
from unittest.mock import patch

import httpx
import pytest
import yaml

from monitoring_lifecycle.config import TimeoutConfig, read_config
from monitoring_lifecycle.orchestrator import LifecycleOrchestrator
from monitoring_lifecycle.probe import EndpointProber
from monitoring_lifecycle.tool.monitoring_lifecycle import main

from ..conftest import monitoring_handler
from ..fakes import (
    FakeChartManager,
    FakeCluster,
    add_cluster_identity,
    add_monitoring_workloads,
    add_node,
    deliver_alerts,
)

V1 = "102.0.0+up40.1.2"
V2 = "103.1.0+up45.31.1"

CONFIG = """\
host: rancher.example.com
cluster_name: local
"""


@pytest.fixture(name="config_path")
def config_path_fixture() -> Generator[pathlib.Path, None, None]:
    with tempfile.TemporaryDirectory() as tmp_dir:
        path = pathlib.Path(tmp_dir) / "run.yaml"
        path.write_text(CONFIG)
        yield path


def _fake_orchestrator(charts: FakeChartManager, cluster: FakeCluster):  # type: ignore[no-untyped-def]
    @asynccontextmanager
    async def orchestrator(
        config_path: pathlib.Path,
    ) -> AsyncGenerator[LifecycleOrchestrator, None]:
        config = await read_config(config_path)
        config.timeouts = TimeoutConfig(readiness=1.0, delivery=1.0, poll_interval=0.01)
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(monitoring_handler())
        ) as client:
            yield LifecycleOrchestrator(charts, cluster, EndpointProber(client), config)

    return orchestrator


@pytest.fixture(name="cluster")
def cluster_fixture() -> FakeCluster:
    cluster = FakeCluster()
    add_cluster_identity(cluster)
    add_node(cluster)
    cluster.on_replace.append(deliver_alerts())
    return cluster


def test_status(
    config_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test printing the install state as columns."""
    charts = FakeChartManager([V2, V1], installed_version=V1)
    with patch("monitoring_lifecycle.tool.status.clients.chart_manager", return_value=charts):
        main(["status", "--config", str(config_path)])

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ["NAME", "NAMESPACE", "INSTALLED", "VERSION", "LATEST"]
    assert lines[1].split() == [
        "rancher-monitoring",
        "cattle-monitoring-system",
        "True",
        V1,
        V2,
    ]


def test_status_json(
    config_path: pathlib.Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Test printing the install state as json."""
    charts = FakeChartManager([V2, V1])
    with patch("monitoring_lifecycle.tool.status.clients.chart_manager", return_value=charts):
        main(["status", "--config", str(config_path), "-o", "json"])

    assert json.loads(capsys.readouterr().out) == {
        "is_installed": False,
        "available_versions": [V2, V1],
    }


def test_validate(
    config_path: pathlib.Path,
    cluster: FakeCluster,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test the validate command prints the run report."""
    charts = FakeChartManager([V2, V1], cluster=cluster)
    with patch(
        "monitoring_lifecycle.tool.validate.clients.orchestrator",
        _fake_orchestrator(charts, cluster),
    ):
        main(["validate", "--config", str(config_path)])

    report = yaml.safe_load(capsys.readouterr().out)
    assert report["state"] == "Validated"
    assert report["history"] == ["Unknown", "Checked", "Installing", "Ready", "Validated"]
    assert report["install_outcome"] == "Installed"
    assert report["version_after"] == V2
    assert report["webhook"]["port"] == 30080


def test_upgrade_skipped(
    config_path: pathlib.Path,
    cluster: FakeCluster,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test the upgrade command when the chart is at the latest version."""
    charts = FakeChartManager([V2, V1], installed_version=V2, cluster=cluster)
    with patch(
        "monitoring_lifecycle.tool.upgrade.clients.orchestrator",
        _fake_orchestrator(charts, cluster),
    ):
        main(["upgrade", "--config", str(config_path)])

    assert capsys.readouterr().out.startswith("Skipped")


def test_upgrade(
    config_path: pathlib.Path,
    cluster: FakeCluster,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test the upgrade command prints the run report."""
    add_monitoring_workloads(cluster)
    charts = FakeChartManager([V2, V1], installed_version=V1, cluster=cluster)
    with patch(
        "monitoring_lifecycle.tool.upgrade.clients.orchestrator",
        _fake_orchestrator(charts, cluster),
    ):
        main(["upgrade", "--config", str(config_path), "-o", "json"])

    report = json.loads(capsys.readouterr().out)
    assert report["state"] == "RevalidatedVersion"
    assert report["version_before"] == V1
    assert report["version_after"] == V2


def test_validate_failure(
    config_path: pathlib.Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Test errors are printed with the last lifecycle state."""
    cluster = FakeCluster()
    charts = FakeChartManager([V2, V1], cluster=cluster)
    with patch(
        "monitoring_lifecycle.tool.validate.clients.orchestrator",
        _fake_orchestrator(charts, cluster),
    ):
        with pytest.raises(SystemExit) as exc_info:
            main(["validate", "--config", str(config_path)])

    assert exc_info.value.code == 1
    err = capsys.readouterr().err
    assert "monitoring-lifecycle error: " in err
    assert "Project System not found in cluster local" in err
    assert "Last lifecycle state: Unknown" in err


def test_missing_config(capsys: pytest.CaptureFixture[str]) -> None:
    """Test a configuration file that does not exist."""
    with pytest.raises(SystemExit) as exc_info:
        main(["status", "--config", "/does/not/exist.yaml"])

    assert exc_info.value.code == 1
    assert "Unable to read run configuration" in capsys.readouterr().err
