"""Configuration objects for monitoring-lifecycle.

A run is configured from a YAML file where only `cluster_name` is required:
```yaml
host: rancher.example.com
cluster_name: downstream
chart:
  repo_url: https://charts.rancher.io
timeouts:
  readiness: 600
```
"""

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import cast

import aiofiles
from mashumaro.exceptions import MissingField, InvalidFieldValue
import yaml

from .exceptions import SetupError
from .manifest import (
    ALERTMANAGER_SECRET,
    ALERTMANAGER_SECRET_KEY,
    BaseManifest,
    MONITORING_CHART,
    MONITORING_CRD_CHART,
    MONITORING_NAMESPACE,
    MonitoringFeatures,
)

__all__ = [
    "RunConfig",
    "read_config",
]

_LOGGER = logging.getLogger(__name__)

TOKEN_ENV = "MONITORING_LIFECYCLE_TOKEN"


@dataclass
class ChartConfig(BaseManifest):
    """Where the monitoring chart comes from and where it is installed."""

    name: str = MONITORING_CHART
    crd_name: str = MONITORING_CRD_CHART
    namespace: str = MONITORING_NAMESPACE
    repo_name: str = "rancher-charts"
    repo_url: str = "https://charts.rancher.io"


@dataclass
class AlertmanagerConfig(BaseManifest):
    """The Secret holding the Alertmanager configuration."""

    namespace: str = MONITORING_NAMESPACE
    name: str = ALERTMANAGER_SECRET
    key: str = ALERTMANAGER_SECRET_KEY


@dataclass
class ReceiverConfig(BaseManifest):
    """The webhook receiver workload that alerts are delivered to."""

    namespace: str = "webhook-namespace"
    deployment: str = "webhook-receiver"
    service: str = "webhook-service"
    image: str = "ranchertest/webhook-receiver:latest"
    port: int = 8080
    path: str = "/"
    annotation_key: str = "alert-received"
    annotation_value: str = "true"
    probe_path: str | None = None
    """Path probed on the receiver to check it is reachable from outside the cluster."""

    rule_name: str = "webhook-rule"
    alert_name: str = "WebhookReceiverTestAlert"


@dataclass
class TimeoutConfig(BaseManifest):
    """Timeouts and polling behavior, all in seconds."""

    install: float = 600.0
    readiness: float = 600.0
    delivery: float = 600.0
    overall: float = 3600.0
    poll_interval: float = 5.0
    list_retries: int = 3
    retry_delay: float = 1.0
    probe_retries: int = 2
    probe_timeout: float = 30.0


@dataclass
class RunConfig(BaseManifest):
    """Configuration for a lifecycle run."""

    cluster_name: str
    """Display name of the cluster to install monitoring into."""

    host: str = ""
    """Rancher host used for probing the monitoring endpoints."""

    token: str | None = None
    """Rancher API token, defaults to the MONITORING_LIFECYCLE_TOKEN environment variable."""

    insecure: bool = False
    """Skip TLS certificate verification when probing."""

    project_name: str = "System"
    kubeconfig: str | None = None
    context: str | None = None
    management_context: str | None = None
    """Kubeconfig context of the management cluster, when different from the target."""

    chart: ChartConfig = field(default_factory=ChartConfig)
    features: MonitoringFeatures = field(default_factory=MonitoringFeatures)
    alertmanager: AlertmanagerConfig = field(default_factory=AlertmanagerConfig)
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)

    revalidate_alerts_after_upgrade: bool = False
    """Run alert delivery validation again after an upgrade."""

    @property
    def api_token(self) -> str | None:
        return self.token or os.getenv(TOKEN_ENV)


def parse_config(content: str) -> RunConfig:
    """Parse the contents of a run configuration file."""
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise SetupError(f"Invalid run configuration: {err}") from err
    if not isinstance(doc, dict):
        raise SetupError("Invalid run configuration: expected a mapping")
    try:
        config = RunConfig.from_dict(doc)
    except (MissingField, InvalidFieldValue) as err:
        raise SetupError(f"Invalid run configuration: {err}") from err
    if not config.cluster_name:
        raise SetupError("Cluster name to install is not set")
    return cast(RunConfig, config)


async def read_config(config_path: Path) -> RunConfig:
    """Return the contents of a run configuration file."""
    try:
        async with aiofiles.open(str(config_path)) as config_file:
            content = await config_file.read()
    except OSError as err:
        raise SetupError(f"Unable to read run configuration {config_path}: {err}") from err
    if not content:
        raise SetupError(f"Run configuration {config_path} is empty")
    _LOGGER.debug("Read run configuration %s", config_path)
    return parse_config(content)
