"""Shared wiring of the clients used by the command line actions."""

from argparse import ArgumentParser
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack, asynccontextmanager
import logging
import pathlib
import tempfile

import httpx

from monitoring_lifecycle.config import RunConfig, read_config
from monitoring_lifecycle.helm import ChartRepository, HelmChartManager
from monitoring_lifecycle.orchestrator import LifecycleOrchestrator
from monitoring_lifecycle.probe import EndpointProber
from monitoring_lifecycle.resources import KubernetesResourceClient

_LOGGER = logging.getLogger(__name__)


def add_config_flags(args: ArgumentParser) -> None:
    """Add the flags shared by every action."""
    args.add_argument(
        "--config",
        "-c",
        help="Path to the run configuration file",
        type=pathlib.Path,
        required=True,
    )


def chart_manager(config: RunConfig, tmp_dir: pathlib.Path) -> HelmChartManager:
    """Return a chart manager using a private helm repository config."""
    cache_dir = tmp_dir / "cache"
    cache_dir.mkdir(exist_ok=True)
    return HelmChartManager(
        tmp_dir,
        cache_dir,
        ChartRepository(config.chart.repo_name, config.chart.repo_url),
        namespace=config.chart.namespace,
        chart=config.chart.name,
        crd_chart=config.chart.crd_name,
        timeout=config.timeouts.install,
        kubeconfig=config.kubeconfig,
        kube_context=config.context,
    )


@asynccontextmanager
async def orchestrator(
    config_path: pathlib.Path,
) -> AsyncGenerator[LifecycleOrchestrator, None]:
    """Build an orchestrator from a run configuration file.

    Every client is closed when the context exits.
    """
    config = await read_config(config_path)
    async with AsyncExitStack() as stack:
        tmp_dir = pathlib.Path(stack.enter_context(tempfile.TemporaryDirectory()))
        resources = await stack.enter_async_context(
            await KubernetesResourceClient.from_kubeconfig(
                config.kubeconfig, config.context
            )
        )
        management = None
        if config.management_context and config.management_context != config.context:
            management = await stack.enter_async_context(
                await KubernetesResourceClient.from_kubeconfig(
                    config.kubeconfig, config.management_context
                )
            )
        http_client = await stack.enter_async_context(
            httpx.AsyncClient(
                verify=not config.insecure,
                timeout=config.timeouts.probe_timeout,
            )
        )
        prober = EndpointProber(
            http_client,
            token=config.api_token,
            retries=config.timeouts.probe_retries,
        )
        yield LifecycleOrchestrator(
            chart_manager(config, tmp_dir),
            resources,
            prober,
            config,
            management=management,
        )
