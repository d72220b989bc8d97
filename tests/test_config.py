"""Tests for the run configuration."""

from collections.abc import Generator
import pathlib
import tempfile

import pytest

from monitoring_lifecycle.config import TOKEN_ENV, parse_config, read_config
from monitoring_lifecycle.exceptions import SetupError

CONFIG = """\
host: rancher.example.com
cluster_name: downstream
insecure: true
chart:
  repo_url: https://charts.example.com
features:
  ingress_nginx: false
receiver:
  probe_path: /healthz
timeouts:
  readiness: 120
"""


@pytest.fixture(name="tmp_dir")
def tmp_dir_fixture() -> Generator[pathlib.Path, None, None]:
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield pathlib.Path(tmp_dir)


def test_parse_config() -> None:
    """Test values not in the file keep their defaults."""
    config = parse_config(CONFIG)

    assert config.host == "rancher.example.com"
    assert config.cluster_name == "downstream"
    assert config.insecure
    assert config.project_name == "System"
    assert config.chart.name == "rancher-monitoring"
    assert config.chart.repo_url == "https://charts.example.com"
    assert not config.features.ingress_nginx
    assert config.features.rke_etcd
    assert config.receiver.probe_path == "/healthz"
    assert config.receiver.port == 8080
    assert config.timeouts.readiness == 120
    assert config.timeouts.overall == 3600
    assert config.alertmanager.key == "alertmanager.yaml"
    assert not config.revalidate_alerts_after_upgrade


def test_token_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test the API token falls back to the environment."""
    monkeypatch.setenv(TOKEN_ENV, "token-env")
    assert parse_config("cluster_name: local").api_token == "token-env"
    assert (
        parse_config("cluster_name: local\ntoken: token-file").api_token
        == "token-file"
    )


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("host: rancher.example.com\n", "cluster_name"),
        ("cluster_name: ''\n", "Cluster name"),
        ("- cluster_name: local\n", "expected a mapping"),
        ("cluster_name: [local\n", "Invalid run configuration"),
        ("cluster_name: local\nchart: rancher-monitoring\n", "Invalid run configuration"),
    ],
)
def test_parse_config_invalid(content: str, match: str) -> None:
    """Test invalid configurations are setup errors."""
    with pytest.raises(SetupError, match=match):
        parse_config(content)


async def test_read_config(tmp_dir: pathlib.Path) -> None:
    """Test reading a configuration file."""
    path = tmp_dir / "run.yaml"
    path.write_text(CONFIG)
    config = await read_config(path)
    assert config.cluster_name == "downstream"


async def test_read_config_missing(tmp_dir: pathlib.Path) -> None:
    """Test reading a file that does not exist."""
    with pytest.raises(SetupError, match="Unable to read"):
        await read_config(tmp_dir / "missing.yaml")


async def test_read_config_empty(tmp_dir: pathlib.Path) -> None:
    """Test reading an empty file."""
    path = tmp_dir / "run.yaml"
    path.write_text("")
    with pytest.raises(SetupError, match="is empty"):
        await read_config(path)
