"""Representation of the objects exchanged during a lifecycle run.

These objects are built from the live state of a cluster and are never cached
between steps. They may be serialized to YAML or JSON to report the outcome of
a run.
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

__all__ = [
    "NamedResource",
    "InstallationState",
    "ChartInstallOptions",
    "MonitoringFeatures",
    "WebhookEndpoint",
]

_LOGGER = logging.getLogger(__name__)


MONITORING_CHART = "rancher-monitoring"
MONITORING_CRD_CHART = "rancher-monitoring-crd"
MONITORING_NAMESPACE = "cattle-monitoring-system"
ALERTMANAGER_SECRET = "alertmanager-rancher-monitoring-alertmanager"
ALERTMANAGER_SECRET_KEY = "alertmanager.yaml"
PRIMARY_CLUSTER = "local"

DEPLOYMENT_KIND = "Deployment"
DAEMONSET_KIND = "DaemonSet"
STATEFULSET_KIND = "StatefulSet"
SECRET_KIND = "Secret"
SERVICE_KIND = "Service"
NAMESPACE_KIND = "Namespace"
NODE_KIND = "Node"
PROMETHEUS_RULE_KIND = "PrometheusRule"

# Annotation Rancher sets on namespaces that belong to a project
PROJECT_ID_ANNOTATION = "field.cattle.io/projectId"
# Annotation RKE sets on nodes with the address reachable from outside the cluster
EXTERNAL_IP_ANNOTATION = "rke.cattle.io/external-ip"


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Build the identifier of a raw kubernetes object."""
        metadata = doc.get("metadata") or {}
        return cls(
            kind=doc.get("kind", ""),
            namespace=metadata.get("namespace"),
            name=metadata.get("name", ""),
        )

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class InstallationState(BaseManifest):
    """Install state of a chart as observed on the cluster."""

    is_installed: bool
    """True when a release of the chart exists in the namespace."""

    installed_version: str | None = None
    """Chart version of the installed release."""

    available_versions: list[str] = field(default_factory=list)
    """Versions published in the chart repository, newest first."""

    @property
    def latest_version(self) -> str | None:
        """Return the newest published version."""
        if not self.available_versions:
            return None
        return self.available_versions[0]

    @property
    def is_latest(self) -> bool:
        """Return True if the installed release is the newest published version."""
        return self.is_installed and self.installed_version == self.latest_version

    def upgrade_target(self) -> str | None:
        """Return the newest published version that differs from the installed one."""
        for version in self.available_versions:
            if version != self.installed_version:
                return version
        return None


@dataclass
class ChartInstallOptions(BaseManifest):
    """Identity of the cluster a chart is installed into.

    The version is replaced between the install and upgrade phases of a run
    with `dataclasses.replace`; everything else stays fixed.
    """

    cluster_id: str
    cluster_name: str
    project_id: str
    version: str

    @property
    def is_primary(self) -> bool:
        """Return True when targeting the management cluster itself."""
        return self.cluster_id == self.cluster_name


@dataclass
class MonitoringFeatures(BaseManifest):
    """Optional integrations of the monitoring chart."""

    ingress_nginx: bool = True
    rke_controller_manager: bool = True
    rke_etcd: bool = True
    rke_proxy: bool = True
    rke_scheduler: bool = True

    def values(self) -> dict[str, Any]:
        """Render the toggles as chart values."""
        return {
            "ingressNginx": {"enabled": self.ingress_nginx},
            "rkeControllerManager": {"enabled": self.rke_controller_manager},
            "rkeEtcd": {"enabled": self.rke_etcd},
            "rkeProxy": {"enabled": self.rke_proxy},
            "rkeScheduler": {"enabled": self.rke_scheduler},
        }


@dataclass
class WebhookEndpoint(BaseManifest):
    """Externally reachable address of the webhook receiver."""

    host: str
    port: int
    path: str = "/"

    @property
    def netloc(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def url(self) -> str:
        """Return the URL alerts are delivered to."""
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"http://{self.netloc}{path}"
