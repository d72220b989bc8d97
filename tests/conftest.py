"""Fixtures shared by the tests."""

from collections.abc import AsyncGenerator, Callable
import json

import httpx
import pytest

from monitoring_lifecycle.config import RunConfig, TimeoutConfig
from monitoring_lifecycle.probe import EndpointProber

from .fakes import FakeCluster, add_cluster_identity, add_node, deliver_alerts

HOST = "rancher.example.com"

TARGETS_UP = {
    "status": "success",
    "data": {
        "activeTargets": [
            {"scrapeUrl": "http://10.42.0.5:9100/metrics", "health": "up"},
            {"scrapeUrl": "http://10.42.0.6:8080/metrics", "health": "up"},
        ]
    },
}


def monitoring_handler(
    targets: dict | None = None, failing_paths: tuple[str, ...] = ()
) -> Callable[[httpx.Request], httpx.Response]:
    """Return a transport handler answering like a healthy monitoring stack."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if any(path.endswith(failing) for failing in failing_paths):
            return httpx.Response(503, text="Service Unavailable")
        if path.endswith("api/v1/targets"):
            return httpx.Response(
                200, content=json.dumps(targets or TARGETS_UP).encode()
            )
        return httpx.Response(200, text="<html></html>")

    return handler


@pytest.fixture(name="handler")
def handler_fixture() -> Callable[[httpx.Request], httpx.Response]:
    return monitoring_handler()


@pytest.fixture(name="http_client")
async def http_client_fixture(
    handler: Callable[[httpx.Request], httpx.Response],
) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture(name="prober")
def prober_fixture(http_client: httpx.AsyncClient) -> EndpointProber:
    return EndpointProber(http_client, token="token-abc")


@pytest.fixture(name="cluster")
def cluster_fixture() -> FakeCluster:
    """A cluster with a node and the Rancher identity of the local cluster."""
    cluster = FakeCluster()
    add_cluster_identity(cluster)
    add_node(cluster)
    cluster.on_replace.append(deliver_alerts())
    return cluster


@pytest.fixture(name="run_config")
def run_config_fixture() -> RunConfig:
    return RunConfig(
        cluster_name="local",
        host=HOST,
        timeouts=TimeoutConfig(
            install=5.0,
            readiness=0.5,
            delivery=0.5,
            overall=10.0,
            poll_interval=0.01,
            retry_delay=0.01,
        ),
    )
