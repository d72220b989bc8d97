"""Orchestrator for monitoring-lifecycle.

This module provides the orchestrator that sequences the chart manager, the
resource API, the readiness waiter and the endpoint prober to validate the
lifecycle of the monitoring stack on a cluster.

The orchestrator moves through these states, and any other transition is an
error:
```
Unknown -> Checked -> Installing | AlreadyInstalled -> Ready -> Validated
    -> UpgradePending -> Upgraded -> RevalidatedVersion
Checked -> Skipped
```
"""

import asyncio
from collections.abc import Awaitable
import copy
from dataclasses import dataclass, field, replace
from enum import StrEnum
from functools import partial
import logging
from typing import Any, TypeVar

from monitoring_lifecycle.alert_config import (
    AlertConfigSecret,
    apply_receiver_edit,
    apply_route_edit,
)
from monitoring_lifecycle.config import RunConfig
from monitoring_lifecycle.context import step_context
from monitoring_lifecycle.exceptions import (
    DeadlineExceededError,
    LifecycleException,
    ProbeError,
    ResourceError,
    SetupError,
    VersionMismatchError,
)
from monitoring_lifecycle.helm import ChartManager
from monitoring_lifecycle.manifest import (
    BaseManifest,
    ChartInstallOptions,
    DEPLOYMENT_KIND,
    InstallationState,
    PRIMARY_CLUSTER,
    WebhookEndpoint,
)
from monitoring_lifecycle.probe import (
    EndpointProber,
    ProbeResult,
    PROMETHEUS_TARGETS_API_PATH,
    cluster_path,
    monitoring_endpoints,
)
from monitoring_lifecycle.readiness import ReadinessSpec, ReadinessWaiter
from monitoring_lifecycle.receiver import (
    alert_matchers,
    namespace_doc,
    prometheus_rule_doc,
    receiver_docs,
    service_doc,
    webhook_endpoint,
)
from monitoring_lifecycle.resources import (
    ResourceClient,
    Selector,
    find_cluster_id,
    find_project_id,
)

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class LifecycleState(StrEnum):
    """The states of a lifecycle run."""

    UNKNOWN = "Unknown"
    CHECKED = "Checked"
    INSTALLING = "Installing"
    ALREADY_INSTALLED = "AlreadyInstalled"
    READY = "Ready"
    VALIDATED = "Validated"
    UPGRADE_PENDING = "UpgradePending"
    UPGRADED = "Upgraded"
    REVALIDATED_VERSION = "RevalidatedVersion"
    SKIPPED = "Skipped"


_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.UNKNOWN: {LifecycleState.CHECKED},
    LifecycleState.CHECKED: {
        LifecycleState.INSTALLING,
        LifecycleState.ALREADY_INSTALLED,
        LifecycleState.SKIPPED,
    },
    LifecycleState.INSTALLING: {LifecycleState.READY},
    LifecycleState.ALREADY_INSTALLED: {LifecycleState.READY},
    LifecycleState.READY: {LifecycleState.VALIDATED},
    LifecycleState.VALIDATED: {LifecycleState.UPGRADE_PENDING},
    LifecycleState.UPGRADE_PENDING: {LifecycleState.UPGRADED},
    LifecycleState.UPGRADED: {LifecycleState.REVALIDATED_VERSION},
    LifecycleState.REVALIDATED_VERSION: set(),
    LifecycleState.SKIPPED: set(),
}


class InstallOutcome(StrEnum):
    """Result of making sure the chart is installed."""

    INSTALLED = "Installed"
    ALREADY_PRESENT = "AlreadyPresent"


@dataclass
class RunReport(BaseManifest):
    """The outcome of a lifecycle run."""

    state: LifecycleState = LifecycleState.UNKNOWN
    history: list[LifecycleState] = field(default_factory=list)
    install_outcome: InstallOutcome | None = None
    version_before: str | None = None
    version_after: str | None = None
    probes: list[ProbeResult] = field(default_factory=list)
    targets_up: bool | None = None
    webhook: WebhookEndpoint | None = None


class LifecycleOrchestrator:
    """Sequences the steps validating the lifecycle of the monitoring stack.

    The orchestrator is responsible for:
    - Deciding between install, skip and upgrade from the live install state
    - Waiting for every workload cohort of the stack to become ready
    - Checking the exposed endpoints of the stack
    - Routing a real alert to a webhook receiver and waiting for its delivery

    The install state is queried again whenever a decision depends on it and
    is never carried across steps.
    """

    def __init__(
        self,
        charts: ChartManager,
        resources: ResourceClient,
        prober: EndpointProber,
        config: RunConfig,
        management: ResourceClient | None = None,
        waiter: ReadinessWaiter | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            charts: Installs, upgrades and inspects the monitoring chart.
            resources: Resource API of the cluster monitoring is installed into.
            prober: Checks the endpoints of the stack.
            config: The run configuration.
            management: Resource API of the management cluster used to resolve
                the cluster and project identity, defaults to `resources`.
            waiter: Waits on workload cohorts, built from the configured
                timeouts when not given.
        """
        self._charts = charts
        self._resources = resources
        self._management = management or resources
        self._prober = prober
        self._config = config
        self._waiter = waiter or ReadinessWaiter(
            resources,
            interval=config.timeouts.poll_interval,
            list_retries=config.timeouts.list_retries,
            retry_delay=config.timeouts.retry_delay,
        )
        self._deadline: float | None = None
        self.options: ChartInstallOptions | None = None
        self.report = RunReport(history=[LifecycleState.UNKNOWN])

    @property
    def state(self) -> LifecycleState:
        """The last state the run reached."""
        return self.report.state

    def _transition(self, state: LifecycleState) -> None:
        if state not in _TRANSITIONS[self.report.state]:
            raise LifecycleException(
                f"Invalid lifecycle transition {self.report.state} -> {state}"
            )
        _LOGGER.info("Lifecycle state %s -> %s", self.report.state, state)
        self.report.state = state
        self.report.history.append(state)

    def _start(self) -> None:
        """Start the overall deadline of a run."""
        if self.report.state != LifecycleState.UNKNOWN:
            raise LifecycleException(
                f"Orchestrator already ran and stopped in state {self.report.state}"
            )
        self._deadline = asyncio.get_running_loop().time() + self._config.timeouts.overall

    def _timeout(self, step_timeout: float) -> float:
        """Return how long the next step may block, bounded by the run deadline."""
        if self._deadline is None:
            return step_timeout
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise DeadlineExceededError(
                f"Run deadline exceeded in state {self.report.state}"
            )
        return min(step_timeout, remaining)

    async def _bounded(self, step: Awaitable[_T], step_timeout: float) -> _T:
        """Await a blocking step within the run deadline."""
        try:
            timeout = self._timeout(step_timeout)
        except DeadlineExceededError:
            if asyncio.iscoroutine(step):
                step.close()
            raise
        try:
            return await asyncio.wait_for(step, timeout)
        except asyncio.TimeoutError as err:
            raise DeadlineExceededError(
                f"Step did not finish within {timeout:0.0f}s in state {self.report.state}"
            ) from err

    async def _within_deadline(self, step: Awaitable[_T]) -> _T:
        """Await a step bounded only by the run deadline."""
        return await self._bounded(step, self._config.timeouts.overall)

    @property
    def _chart(self) -> str:
        return self._config.chart.name

    @property
    def _namespace(self) -> str:
        return self._config.chart.namespace

    def _require_options(self) -> ChartInstallOptions:
        if self.options is None:
            raise LifecycleException("Cluster identity has not been resolved")
        return self.options

    async def resolve_options(self) -> ChartInstallOptions:
        """Resolve the cluster and project identity for installing the chart.

        Nothing is mutated before this succeeds.
        """
        config = self._config
        with step_context("resolve-identity"):
            if not config.host:
                raise SetupError("Rancher host to probe is not set")
            try:
                if config.cluster_name == PRIMARY_CLUSTER:
                    cluster_id: str | None = config.cluster_name
                else:
                    cluster_id = await self._within_deadline(
                        find_cluster_id(self._management, config.cluster_name)
                    )
                if cluster_id is None:
                    raise SetupError(f"Cluster {config.cluster_name} not found")
                project_id = await self._within_deadline(
                    find_project_id(self._management, cluster_id, config.project_name)
                )
            except ResourceError as err:
                raise SetupError(f"Unable to resolve cluster identity: {err}") from err
            if project_id is None:
                raise SetupError(
                    f"Project {config.project_name} not found in cluster {cluster_id}"
                )
            version = await self._within_deadline(
                self._charts.latest_version(self._chart)
            )
        self.options = ChartInstallOptions(
            cluster_id=cluster_id,
            cluster_name=config.cluster_name,
            project_id=project_id,
            version=version,
        )
        _LOGGER.info(
            "Resolved cluster %s (%s) project %s, latest %s version %s",
            config.cluster_name,
            cluster_id,
            project_id,
            self._chart,
            version,
        )
        return self.options

    async def installation_state(self) -> InstallationState:
        """Query the install state of the chart from the cluster."""
        return await self._within_deadline(
            self._charts.status(self._namespace, self._chart)
        )

    async def check(self) -> InstallationState:
        """Query the install state once on entering the run."""
        _LOGGER.info("Checking if the %s chart is already installed", self._chart)
        state = await self.installation_state()
        self.report.version_before = state.installed_version
        self._transition(LifecycleState.CHECKED)
        return state

    async def ensure_installed(
        self, state: InstallationState, desired_version: str
    ) -> InstallOutcome:
        """Install the chart at `desired_version` unless it is already installed."""
        if state.is_installed:
            _LOGGER.info(
                "Chart %s already installed at version %s",
                self._chart,
                state.installed_version,
            )
            self._transition(LifecycleState.ALREADY_INSTALLED)
            outcome = InstallOutcome.ALREADY_PRESENT
        else:
            self._transition(LifecycleState.INSTALLING)
            self.options = replace(self._require_options(), version=desired_version)
            with step_context("install"):
                await self._bounded(
                    self._charts.install(self.options, self._config.features),
                    self._config.timeouts.install,
                )
            outcome = InstallOutcome.INSTALLED
        self.report.install_outcome = outcome
        return outcome

    async def wait_ready(self) -> None:
        """Wait for every workload cohort of the stack, stopping at the first failure."""
        cohorts = [
            ReadinessSpec.deployments(self._namespace),
            ReadinessSpec.daemonsets(self._namespace),
            ReadinessSpec.statefulsets(self._namespace),
        ]
        with step_context("wait-ready"):
            for spec in cohorts:
                await self._waiter.wait_until_ready(
                    spec, self._timeout(self._config.timeouts.readiness)
                )

    async def validate_endpoints(self) -> list[ProbeResult]:
        """Probe every exposed endpoint and the scrape targets of Prometheus.

        Every endpoint is probed before a failure is raised.
        """
        options = self._require_options()
        host = self._config.host
        with step_context("validate-endpoints"):
            endpoints = monitoring_endpoints(options.cluster_id, options.is_primary)
            try:
                results = await self._within_deadline(
                    self._prober.probe_all(host, endpoints)
                )
            except ProbeError as err:
                self.report.probes = err.results
                raise
            self.report.probes = results
            _LOGGER.info("Validating all Prometheus active targets are up")
            targets_path = cluster_path(
                PROMETHEUS_TARGETS_API_PATH, options.cluster_id, options.is_primary
            )
            self.report.targets_up = await self._within_deadline(
                self._prober.targets_up(host, targets_path)
            )
            if not self.report.targets_up:
                raise ProbeError("Not all Prometheus active targets are up")
        return results

    async def _reset_delivery(self, deployment: dict[str, Any]) -> dict[str, Any]:
        """Clear the delivery annotation left on the receiver by an earlier run."""
        receiver = self._config.receiver
        annotations = (deployment.get("metadata") or {}).get("annotations") or {}
        if receiver.annotation_key not in annotations:
            return deployment
        _LOGGER.info(
            "Clearing %s annotation from webhook receiver %s",
            receiver.annotation_key,
            receiver.deployment,
        )
        doc = copy.deepcopy(deployment)
        del doc["metadata"]["annotations"][receiver.annotation_key]
        return await self._resources.replace(doc)

    async def validate_alert_delivery(self) -> WebhookEndpoint:
        """Route an alert to a webhook receiver and wait for it to be delivered."""
        options = self._require_options()
        receiver = self._config.receiver
        timeouts = self._config.timeouts
        with step_context("alert-delivery"):
            _LOGGER.info("Creating webhook receiver namespace %s", receiver.namespace)
            await self._within_deadline(
                self._resources.create(
                    namespace_doc(receiver.namespace, options.project_id),
                    exist_ok=True,
                )
            )
            _LOGGER.info("Creating webhook receiver deployment and its resources")
            deployment: dict[str, Any] = {}
            for doc in receiver_docs(receiver):
                created = await self._within_deadline(
                    self._resources.create(doc, exist_ok=True)
                )
                if doc["kind"] == DEPLOYMENT_KIND:
                    deployment = created
            deployment = await self._within_deadline(
                self._reset_delivery(deployment)
            )
            await self._waiter.wait_until_ready(
                ReadinessSpec.deployments(
                    receiver.namespace, Selector(name=receiver.deployment)
                ),
                self._timeout(timeouts.readiness),
            )

            _LOGGER.info("Creating node port service for webhook receiver")
            service = await self._within_deadline(
                self._resources.create(service_doc(receiver, deployment), exist_ok=True)
            )
            endpoint = await self._within_deadline(
                webhook_endpoint(self._resources, receiver, service)
            )
            self.report.webhook = endpoint

            secret = AlertConfigSecret(
                self._resources,
                self._config.alertmanager.namespace,
                self._config.alertmanager.name,
                self._config.alertmanager.key,
            )
            _LOGGER.info("Editing alert manager secret receivers")
            await self._within_deadline(
                secret.patch(partial(apply_receiver_edit, target_url=endpoint.url))
            )

            _LOGGER.info("Creating prometheus rule %s", receiver.rule_name)
            await self._within_deadline(
                self._resources.create(
                    prometheus_rule_doc(receiver, self._namespace), exist_ok=True
                )
            )

            _LOGGER.info("Editing alert manager secret routes")
            await self._within_deadline(
                secret.patch(
                    partial(
                        apply_route_edit,
                        target_url=endpoint.url,
                        matchers=alert_matchers(receiver),
                    )
                )
            )

            if receiver.probe_path is not None:
                _LOGGER.info("Validating webhook receiver is accessible externally")
                result = await self._within_deadline(
                    self._prober.probe(
                        endpoint.netloc, receiver.probe_path, secure=False
                    )
                )
                if not result.ok:
                    raise ProbeError(
                        f"Webhook receiver not accessible: {result.url} ({result.status_code})",
                        [result],
                    )

            _LOGGER.info("Validating alertmanager sent alert to webhook receiver")
            await self._waiter.wait_until_ready(
                ReadinessSpec.annotation(
                    DEPLOYMENT_KIND,
                    receiver.namespace,
                    receiver.deployment,
                    receiver.annotation_key,
                    receiver.annotation_value,
                ),
                self._timeout(timeouts.delivery),
            )
        return endpoint

    async def _validate(self, alerts: bool) -> None:
        await self.wait_ready()
        await self.validate_endpoints()
        if alerts:
            await self.validate_alert_delivery()

    async def run(self) -> RunReport:
        """Install the chart if needed and validate the running stack end to end."""
        self._start()
        with step_context("run"):
            options = await self.resolve_options()
            state = await self.check()
            await self.ensure_installed(state, options.version)
            await self.wait_ready()
            self._transition(LifecycleState.READY)
            await self.validate_endpoints()
            await self.validate_alert_delivery()
            self._transition(LifecycleState.VALIDATED)
            self.report.version_after = (
                await self.installation_state()
            ).installed_version
        return self.report

    async def run_upgrade(self) -> RunReport:
        """Upgrade the chart to the newest version and validate the result.

        When the chart is not installed the version before the newest is
        installed first. A chart already at the newest version is skipped.
        """
        self._start()
        with step_context("upgrade"):
            await self.resolve_options()
            state = await self.check()
            if state.is_latest:
                _LOGGER.info(
                    "Skipping the upgrade, chart %s is already at the latest version %s",
                    self._chart,
                    state.installed_version,
                )
                self._transition(LifecycleState.SKIPPED)
                self.report.version_after = state.installed_version
                return self.report
            if len(state.available_versions) < 2:
                raise SetupError(
                    f"There should be at least 2 versions of the {self._chart} chart"
                )
            await self.ensure_installed(state, state.available_versions[1])
            await self.wait_ready()
            self._transition(LifecycleState.READY)
            await self.validate_endpoints()
            self._transition(LifecycleState.VALIDATED)

            state = await self.installation_state()
            if state.installed_version not in state.available_versions[1:]:
                raise VersionMismatchError(
                    f"one of {state.available_versions[1:]}", state.installed_version
                )
            self.report.version_before = state.installed_version
            if (target := state.upgrade_target()) is None:
                raise SetupError(f"No version of {self._chart} to upgrade to")
            self._transition(LifecycleState.UPGRADE_PENDING)
            self.options = replace(self._require_options(), version=target)
            with step_context("chart-upgrade"):
                _LOGGER.info("Upgrading %s chart to version %s", self._chart, target)
                await self._bounded(
                    self._charts.upgrade(self.options, self._config.features),
                    self._config.timeouts.install,
                )
            self._transition(LifecycleState.UPGRADED)

            await self._validate(alerts=self._config.revalidate_alerts_after_upgrade)
            observed = (await self.installation_state()).installed_version
            self.report.version_after = observed
            if observed != target:
                raise VersionMismatchError(target, observed)
            self._transition(LifecycleState.REVALIDATED_VERSION)
        return self.report
