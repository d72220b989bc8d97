"""Library for checking that HTTP endpoints of the monitoring stack respond.

A probe never raises for an unexpected status code; it reports `ok=False`
instead. Only transport failures (DNS, refused connections, timeouts) raise.
"""

import asyncio
from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import Any

import httpx

from .exceptions import ProbeError
from .manifest import BaseManifest, MONITORING_NAMESPACE

__all__ = [
    "EndpointKind",
    "Endpoint",
    "ProbeResult",
    "EndpointProber",
    "monitoring_endpoints",
]

_LOGGER = logging.getLogger(__name__)

_TRANSPORT_RETRY_DELAY = 1.0

_SERVICE_PROXY = "api/v1/namespaces/{namespace}/services/http:{service}:{port}/proxy"


class EndpointKind(StrEnum):
    """The kind of endpoint, which decides what status codes are a success."""

    UI = "ui"
    """Browser facing pages, which may redirect."""

    API = "api"
    """Machine facing APIs, which must answer 200."""

    def is_success(self, status_code: int) -> bool:
        if self is EndpointKind.API:
            return status_code == 200
        return 200 <= status_code < 400


@dataclass(frozen=True)
class Endpoint:
    """A path to probe and the kind of endpoint behind it."""

    path: str
    kind: EndpointKind = EndpointKind.UI


@dataclass
class ProbeResult(BaseManifest):
    """The outcome of probing a single endpoint."""

    url: str
    ok: bool
    status_code: int | None = None
    error: str | None = None


def _proxy_path(service: str, port: int, suffix: str) -> str:
    base = _SERVICE_PROXY.format(
        namespace=MONITORING_NAMESPACE, service=service, port=port
    )
    return f"{base}/{suffix}"


ALERTMANAGER_PATH = _proxy_path("rancher-monitoring-alertmanager", 9093, "#/alerts")
GRAFANA_PATH = _proxy_path("rancher-monitoring-grafana", 80, "?orgId=1")
PROMETHEUS_GRAPH_PATH = _proxy_path("rancher-monitoring-prometheus", 9090, "graph")
PROMETHEUS_RULES_PATH = _proxy_path("rancher-monitoring-prometheus", 9090, "rules")
PROMETHEUS_TARGETS_PATH = _proxy_path("rancher-monitoring-prometheus", 9090, "targets")
PROMETHEUS_TARGETS_API_PATH = _proxy_path(
    "rancher-monitoring-prometheus", 9090, "api/v1/targets"
)


def cluster_path(path: str, cluster_id: str, is_primary: bool) -> str:
    """Resolve a path against the proxy of a downstream cluster."""
    if is_primary:
        return path
    return f"k8s/clusters/{cluster_id}/{path}"


def monitoring_endpoints(cluster_id: str, is_primary: bool) -> list[Endpoint]:
    """Return the UI endpoints exposed by the monitoring stack."""
    return [
        Endpoint(cluster_path(path, cluster_id, is_primary))
        for path in (
            ALERTMANAGER_PATH,
            GRAFANA_PATH,
            PROMETHEUS_GRAPH_PATH,
            PROMETHEUS_RULES_PATH,
            PROMETHEUS_TARGETS_PATH,
        )
    ]


class EndpointProber:
    """Issues reachability checks against endpoints on a host."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str | None = None,
        retries: int = 0,
    ) -> None:
        """Initialize EndpointProber.

        Args:
            http_client: Client used for every request. Redirects are not
                followed so UI endpoints may answer with one.
            token: Bearer token sent with every request.
            retries: Extra attempts made after a transport failure.
        """
        self._http_client = http_client
        self._token = token
        self._retries = retries

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    @staticmethod
    def url(host: str, path: str, secure: bool = True) -> str:
        scheme = "https" if secure else "http"
        return f"{scheme}://{host}/{path.lstrip('/')}"

    async def _get(self, url: str) -> httpx.Response:
        attempt = 0
        while True:
            try:
                return await self._http_client.get(
                    url, headers=self._headers(), follow_redirects=False
                )
            except httpx.TransportError as err:
                if attempt >= self._retries:
                    raise ProbeError(f"Unable to reach {url}: {err!r}") from err
                attempt += 1
                _LOGGER.warning(
                    "Transport failure probing %s (retry %d/%d): %s",
                    url,
                    attempt,
                    self._retries,
                    err,
                )
                await asyncio.sleep(_TRANSPORT_RETRY_DELAY)

    async def probe(
        self,
        host: str,
        path: str,
        secure: bool = True,
        kind: EndpointKind = EndpointKind.UI,
    ) -> ProbeResult:
        """Check a single endpoint, raising ProbeError only if it can't be reached."""
        url = self.url(host, path, secure)
        response = await self._get(url)
        ok = kind.is_success(response.status_code)
        _LOGGER.debug("Probe %s returned %d (ok=%s)", url, response.status_code, ok)
        return ProbeResult(url=url, ok=ok, status_code=response.status_code)

    async def probe_all(
        self, host: str, endpoints: list[Endpoint], secure: bool = True
    ) -> list[ProbeResult]:
        """Probe every endpoint, then raise ProbeError if any of them failed."""
        results = []
        for endpoint in endpoints:
            _LOGGER.info("Validating %s is accessible", endpoint.path)
            try:
                result = await self.probe(host, endpoint.path, secure, endpoint.kind)
            except ProbeError as err:
                result = ProbeResult(
                    url=self.url(host, endpoint.path, secure), ok=False, error=str(err)
                )
            results.append(result)
        if failed := [result for result in results if not result.ok]:
            details = ", ".join(
                f"{result.url} ({result.error or result.status_code})"
                for result in failed
            )
            raise ProbeError(f"Endpoints not accessible: {details}", failed)
        return results

    async def targets_up(self, host: str, path: str, secure: bool = True) -> bool:
        """Return True if Prometheus reports every active scrape target as up."""
        url = self.url(host, path, secure)
        response = await self._get(url)
        if not EndpointKind.API.is_success(response.status_code):
            _LOGGER.warning("Targets API %s returned %d", url, response.status_code)
            return False
        try:
            body: dict[str, Any] = response.json()
        except ValueError:
            _LOGGER.warning("Targets API %s did not return JSON", url)
            return False
        targets = (body.get("data") or {}).get("activeTargets") or []
        down = [
            target.get("scrapeUrl", "<unknown>")
            for target in targets
            if target.get("health") != "up"
        ]
        if down:
            _LOGGER.warning("Prometheus targets not up: %s", down)
        return bool(targets) and not down
