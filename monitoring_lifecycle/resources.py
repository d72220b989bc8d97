"""Library for reading and writing kubernetes resources on the target cluster.

Resources are exchanged as plain dictionaries in the same shape as the
kubernetes API documents (camelCase keys, `kind` and `apiVersion` set), so
callers never depend on the generated client models.

This is an example that lists the monitoring deployments:
```python
from monitoring_lifecycle.resources import KubernetesResourceClient, Selector

async with await KubernetesResourceClient.from_kubeconfig() as resources:
    deployments = await resources.list(
        "Deployment", "cattle-monitoring-system", Selector()
    )
```
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import logging
import os
from pathlib import Path
from types import TracebackType
from typing import Any, Awaitable

import aiohttp
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.exceptions import ApiException

from .exceptions import (
    ResourceConflictError,
    ResourceError,
    ResourceNotFoundError,
    SetupError,
)
from .manifest import NamedResource

__all__ = [
    "Selector",
    "ResourceClient",
    "KubernetesResourceClient",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selector:
    """Selects resources by label, by name, or both."""

    label_selector: str | None = None
    """A kubernetes label selector e.g. `app=webhook-receiver`."""

    name: str | None = None
    """Select the single resource with this name."""

    @property
    def field_selector(self) -> str | None:
        if self.name is None:
            return None
        return f"metadata.name={self.name}"

    def __str__(self) -> str:
        parts = []
        if self.label_selector:
            parts.append(self.label_selector)
        if self.field_selector:
            parts.append(self.field_selector)
        return ",".join(parts) or "*"


class ResourceClient(ABC):
    """Interface for CRUD operations on cluster resources."""

    @abstractmethod
    async def list(
        self, kind: str, namespace: str | None, selector: Selector | None = None
    ) -> list[dict[str, Any]]:
        """Return all resources of `kind` matching the selector."""

    @abstractmethod
    async def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        """Return a single resource, raising ResourceNotFoundError if missing."""

    @abstractmethod
    async def create(self, doc: dict[str, Any], exist_ok: bool = False) -> dict[str, Any]:
        """Create the resource and return it as stored by the cluster.

        When `exist_ok` is set and the resource already exists, the existing
        resource is returned instead of raising ResourceConflictError.
        """

    @abstractmethod
    async def replace(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing resource.

        The `metadata.resourceVersion` of the document is sent along, so a
        concurrent modification is reported as ResourceConflictError.
        """


@dataclass(frozen=True)
class _KindApi:
    """How to reach a kind with the typed kubernetes client."""

    api: type
    suffix: str
    namespaced: bool = True
    api_version: str = "v1"


@dataclass(frozen=True)
class _CustomKind:
    """How to reach a custom resource kind."""

    group: str
    version: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


_KINDS: dict[str, _KindApi | _CustomKind] = {
    "Deployment": _KindApi(client.AppsV1Api, "namespaced_deployment", api_version="apps/v1"),
    "DaemonSet": _KindApi(client.AppsV1Api, "namespaced_daemon_set", api_version="apps/v1"),
    "StatefulSet": _KindApi(client.AppsV1Api, "namespaced_stateful_set", api_version="apps/v1"),
    "Secret": _KindApi(client.CoreV1Api, "namespaced_secret"),
    "Service": _KindApi(client.CoreV1Api, "namespaced_service"),
    "ServiceAccount": _KindApi(client.CoreV1Api, "namespaced_service_account"),
    "Namespace": _KindApi(client.CoreV1Api, "namespace", namespaced=False),
    "Node": _KindApi(client.CoreV1Api, "node", namespaced=False),
    "Role": _KindApi(
        client.RbacAuthorizationV1Api,
        "namespaced_role",
        api_version="rbac.authorization.k8s.io/v1",
    ),
    "RoleBinding": _KindApi(
        client.RbacAuthorizationV1Api,
        "namespaced_role_binding",
        api_version="rbac.authorization.k8s.io/v1",
    ),
    "PrometheusRule": _CustomKind("monitoring.coreos.com", "v1", "prometheusrules"),
    "Cluster": _CustomKind("management.cattle.io", "v3", "clusters", namespaced=False),
    "Project": _CustomKind("management.cattle.io", "v3", "projects"),
}


def _kind_api(kind: str) -> _KindApi | _CustomKind:
    if (kind_api := _KINDS.get(kind)) is None:
        raise ResourceError(f"Unsupported resource kind {kind}")
    return kind_api


class KubernetesResourceClient(ResourceClient):
    """ResourceClient backed by the kubernetes API server."""

    def __init__(self, api_client: client.ApiClient) -> None:
        """Initialize KubernetesResourceClient."""
        self._api_client = api_client

    @classmethod
    async def from_kubeconfig(
        cls, kubeconfig: str | None = None, context: str | None = None
    ) -> "KubernetesResourceClient":
        """Create a client from a kubeconfig file or the in-cluster environment."""
        config_file = Path(
            kubeconfig or config.kube_config.KUBE_CONFIG_DEFAULT_LOCATION
        ).expanduser()
        if config_file.exists():
            _LOGGER.debug("Loading kubeconfig %s (context %s)", config_file, context)
            api_client = await config.new_client_from_config(
                config_file=str(config_file), context=context
            )
            return cls(api_client)
        if os.getenv("KUBERNETES_SERVICE_HOST"):
            config.load_incluster_config()
            return cls(client.ApiClient())
        raise SetupError(
            "Unable to configure kubernetes client: no kubeconfig file nor "
            "in-cluster environment variables found"
        )

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self._api_client.close()

    async def __aenter__(self) -> "KubernetesResourceClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _call(self, description: str, request: Awaitable[Any]) -> Any:
        """Await an API request, translating failures to ResourceError."""
        _LOGGER.debug("Resource API: %s", description)
        try:
            return await request
        except ApiException as err:
            message = f"Failed to {description}: {err.status} {err.reason}"
            if err.status == 404:
                raise ResourceNotFoundError(message, err.status) from err
            if err.status == 409:
                raise ResourceConflictError(message, err.status) from err
            raise ResourceError(message, err.status) from err
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise ResourceError(f"Failed to {description}: {err}") from err

    def _to_dict(self, obj: Any, kind: str, api_version: str) -> dict[str, Any]:
        """Convert a client model to a document with kind and apiVersion set."""
        doc: dict[str, Any] = self._api_client.sanitize_for_serialization(obj)
        doc.setdefault("kind", kind)
        doc.setdefault("apiVersion", api_version)
        return doc

    async def list(
        self, kind: str, namespace: str | None, selector: Selector | None = None
    ) -> list[dict[str, Any]]:
        """Return all resources of `kind` matching the selector."""
        selector = selector or Selector()
        kind_api = _kind_api(kind)
        kwargs: dict[str, Any] = {}
        if selector.label_selector:
            kwargs["label_selector"] = selector.label_selector
        if selector.field_selector:
            kwargs["field_selector"] = selector.field_selector
        description = f"list {kind} in {namespace or 'cluster'} ({selector})"
        if isinstance(kind_api, _CustomKind):
            api = client.CustomObjectsApi(self._api_client)
            if kind_api.namespaced:
                request = api.list_namespaced_custom_object(
                    kind_api.group, kind_api.version, namespace, kind_api.plural, **kwargs
                )
            else:
                request = api.list_cluster_custom_object(
                    kind_api.group, kind_api.version, kind_api.plural, **kwargs
                )
            result = await self._call(description, request)
            items = result.get("items", [])
        else:
            typed_api = kind_api.api(self._api_client)
            if kind_api.namespaced:
                request = getattr(typed_api, f"list_{kind_api.suffix}")(namespace, **kwargs)
            else:
                request = getattr(typed_api, f"list_{kind_api.suffix}")(**kwargs)
            result = await self._call(description, request)
            items = self._api_client.sanitize_for_serialization(result.items)
        # List responses omit the kind of their items
        for item in items:
            item.setdefault("kind", kind)
            item.setdefault("apiVersion", kind_api.api_version)
        return items

    async def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        """Return a single resource, raising ResourceNotFoundError if missing."""
        kind_api = _kind_api(kind)
        description = f"get {NamedResource(kind, namespace, name)}"
        if isinstance(kind_api, _CustomKind):
            api = client.CustomObjectsApi(self._api_client)
            if kind_api.namespaced:
                request = api.get_namespaced_custom_object(
                    kind_api.group, kind_api.version, namespace, kind_api.plural, name
                )
            else:
                request = api.get_cluster_custom_object(
                    kind_api.group, kind_api.version, kind_api.plural, name
                )
            return await self._call(description, request)
        typed_api = kind_api.api(self._api_client)
        if kind_api.namespaced:
            request = getattr(typed_api, f"read_{kind_api.suffix}")(name, namespace)
        else:
            request = getattr(typed_api, f"read_{kind_api.suffix}")(name)
        return self._to_dict(
            await self._call(description, request), kind, kind_api.api_version
        )

    async def create(self, doc: dict[str, Any], exist_ok: bool = False) -> dict[str, Any]:
        """Create the resource and return it as stored by the cluster."""
        resource_id = NamedResource.parse_doc(doc)
        kind_api = _kind_api(resource_id.kind)
        description = f"create {resource_id}"
        namespace = resource_id.namespace
        try:
            if isinstance(kind_api, _CustomKind):
                api = client.CustomObjectsApi(self._api_client)
                if kind_api.namespaced:
                    request = api.create_namespaced_custom_object(
                        kind_api.group, kind_api.version, namespace, kind_api.plural, doc
                    )
                else:
                    request = api.create_cluster_custom_object(
                        kind_api.group, kind_api.version, kind_api.plural, doc
                    )
                return await self._call(description, request)
            typed_api = kind_api.api(self._api_client)
            if kind_api.namespaced:
                request = getattr(typed_api, f"create_{kind_api.suffix}")(namespace, doc)
            else:
                request = getattr(typed_api, f"create_{kind_api.suffix}")(doc)
            return self._to_dict(
                await self._call(description, request),
                resource_id.kind,
                kind_api.api_version,
            )
        except ResourceConflictError:
            if not exist_ok:
                raise
            _LOGGER.info("%s already exists", resource_id)
            return await self.get(resource_id.kind, namespace, resource_id.name)

    async def replace(self, doc: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing resource."""
        resource_id = NamedResource.parse_doc(doc)
        kind_api = _kind_api(resource_id.kind)
        description = f"replace {resource_id}"
        namespace = resource_id.namespace
        if isinstance(kind_api, _CustomKind):
            api = client.CustomObjectsApi(self._api_client)
            if kind_api.namespaced:
                request = api.replace_namespaced_custom_object(
                    kind_api.group,
                    kind_api.version,
                    namespace,
                    kind_api.plural,
                    resource_id.name,
                    doc,
                )
            else:
                request = api.replace_cluster_custom_object(
                    kind_api.group, kind_api.version, kind_api.plural, resource_id.name, doc
                )
            return await self._call(description, request)
        typed_api = kind_api.api(self._api_client)
        if kind_api.namespaced:
            request = getattr(typed_api, f"replace_{kind_api.suffix}")(
                resource_id.name, namespace, doc
            )
        else:
            request = getattr(typed_api, f"replace_{kind_api.suffix}")(
                resource_id.name, doc
            )
        return self._to_dict(
            await self._call(description, request),
            resource_id.kind,
            kind_api.api_version,
        )


async def find_cluster_id(resources: ResourceClient, cluster_name: str) -> str | None:
    """Return the id of the Rancher cluster with the display name `cluster_name`."""
    for cluster in await resources.list("Cluster", None):
        metadata = cluster.get("metadata") or {}
        spec = cluster.get("spec") or {}
        if cluster_name in (spec.get("displayName"), metadata.get("name")):
            return str(metadata["name"])
    return None


async def find_project_id(
    resources: ResourceClient, cluster_id: str, project_name: str
) -> str | None:
    """Return the `<cluster>:<project>` id of a Rancher project by display name."""
    for project in await resources.list("Project", cluster_id):
        spec = project.get("spec") or {}
        if spec.get("displayName") == project_name:
            return f"{cluster_id}:{project['metadata']['name']}"
    return None
