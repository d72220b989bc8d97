"""Provides a utility for waiting on a cohort of workloads to become ready.

A cohort is every resource of one kind matching a selector in a namespace.
Each poll lists the cohort again, so resources that appear or disappear while
waiting are taken into account. An empty cohort never counts as ready.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
import logging
from typing import Any

from .exceptions import ReadinessTimeoutError, ResourceError
from .manifest import (
    DAEMONSET_KIND,
    DEPLOYMENT_KIND,
    STATEFULSET_KIND,
    NamedResource,
)
from .resources import ResourceClient, Selector

__all__ = [
    "Predicate",
    "ReadinessSpec",
    "ReadinessObservation",
    "ReadinessWaiter",
    "ALL_REPLICAS_AVAILABLE",
    "ALL_NODES_SCHEDULED",
    "ALL_REPLICAS_READY",
    "annotation_equals",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_LIST_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class Predicate:
    """A named readiness condition evaluated against a single resource."""

    name: str
    check: Callable[[dict[str, Any]], bool] = field(compare=False)

    def __call__(self, doc: dict[str, Any]) -> bool:
        return self.check(doc)

    def __str__(self) -> str:
        return self.name


def _spec_replicas(doc: dict[str, Any]) -> int:
    replicas = (doc.get("spec") or {}).get("replicas")
    return 1 if replicas is None else int(replicas)


def _status(doc: dict[str, Any]) -> dict[str, Any]:
    return doc.get("status") or {}


ALL_REPLICAS_AVAILABLE = Predicate(
    "all-replicas-available",
    lambda doc: _status(doc).get("availableReplicas", 0) == _spec_replicas(doc),
)
"""Deployments: every desired replica is available."""

ALL_NODES_SCHEDULED = Predicate(
    "all-nodes-scheduled",
    lambda doc: _status(doc).get("numberAvailable", 0)
    == _status(doc).get("desiredNumberScheduled", 0),
)
"""DaemonSets: a pod is available on every node it should be scheduled on."""

ALL_REPLICAS_READY = Predicate(
    "all-replicas-ready",
    lambda doc: _status(doc).get("readyReplicas", 0) == _spec_replicas(doc),
)
"""StatefulSets: every desired replica is ready."""


def annotation_equals(key: str, value: str) -> Predicate:
    """Return a predicate for an annotation being set to a value."""

    def check(doc: dict[str, Any]) -> bool:
        annotations = (doc.get("metadata") or {}).get("annotations") or {}
        return bool(annotations.get(key) == value)

    return Predicate(f"annotation {key}={value}", check)


@dataclass(frozen=True)
class ReadinessSpec:
    """The cohort of resources to wait on and what ready means for them."""

    kind: str
    namespace: str | None
    selector: Selector
    predicate: Predicate

    @classmethod
    def deployments(
        cls, namespace: str, selector: Selector | None = None
    ) -> "ReadinessSpec":
        return cls(
            DEPLOYMENT_KIND, namespace, selector or Selector(), ALL_REPLICAS_AVAILABLE
        )

    @classmethod
    def daemonsets(
        cls, namespace: str, selector: Selector | None = None
    ) -> "ReadinessSpec":
        return cls(
            DAEMONSET_KIND, namespace, selector or Selector(), ALL_NODES_SCHEDULED
        )

    @classmethod
    def statefulsets(
        cls, namespace: str, selector: Selector | None = None
    ) -> "ReadinessSpec":
        return cls(
            STATEFULSET_KIND, namespace, selector or Selector(), ALL_REPLICAS_READY
        )

    @classmethod
    def annotation(
        cls, kind: str, namespace: str, name: str, key: str, value: str
    ) -> "ReadinessSpec":
        """Wait for a single named resource to carry an annotation value."""
        return cls(kind, namespace, Selector(name=name), annotation_equals(key, value))

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace} ({self.selector}) {self.predicate}"


@dataclass
class ReadinessObservation:
    """What a single poll of a cohort observed."""

    spec: ReadinessSpec
    matched: list[NamedResource] = field(default_factory=list)
    not_ready: list[NamedResource] = field(default_factory=list)
    error: str | None = None
    polls: int = 0

    @property
    def ready(self) -> bool:
        return self.error is None and bool(self.matched) and not self.not_ready

    @property
    def summary_message(self) -> str:
        """Return a human-readable summary of the observation."""
        if self.error:
            return f"Last poll failed: {self.error}"
        if not self.matched:
            return f"No resources matched {self.spec.selector}"
        if self.not_ready:
            names = [str(resource) for resource in self.not_ready]
            return f"Not ready ({self.spec.predicate}): {names}"
        return f"All {len(self.matched)} resources ready"


class ReadinessWaiter:
    """Polls the cluster until a cohort of resources satisfies a predicate."""

    def __init__(
        self,
        resources: ResourceClient,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        list_retries: int = DEFAULT_LIST_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize ReadinessWaiter.

        Args:
            resources: Client used to list the cohort on every poll.
            interval: Seconds between polls.
            list_retries: Attempts made to list the cohort within a single
                poll before that poll is counted as failed.
            retry_delay: Seconds between list attempts within a poll.
        """
        self._resources = resources
        self._interval = interval
        self._list_retries = max(1, list_retries)
        self._retry_delay = retry_delay

    async def _list(self, spec: ReadinessSpec) -> list[dict[str, Any]]:
        """List the cohort, retrying transient failures."""
        attempt = 1
        while True:
            try:
                return await self._resources.list(
                    spec.kind, spec.namespace, spec.selector
                )
            except ResourceError as err:
                if attempt >= self._list_retries:
                    raise
                _LOGGER.warning(
                    "Listing %s failed (attempt %d/%d): %s",
                    spec,
                    attempt,
                    self._list_retries,
                    err,
                )
                attempt += 1
                await asyncio.sleep(self._retry_delay)

    async def poll(self, spec: ReadinessSpec) -> tuple[ReadinessObservation, list[dict[str, Any]]]:
        """Evaluate the predicate once over the current cohort."""
        observation = ReadinessObservation(spec=spec)
        try:
            docs = await self._list(spec)
        except ResourceError as err:
            observation.error = str(err)
            return observation, []
        for doc in docs:
            resource_id = NamedResource.parse_doc(doc)
            observation.matched.append(resource_id)
            if not spec.predicate(doc):
                observation.not_ready.append(resource_id)
        return observation, docs

    async def wait_until_ready(
        self, spec: ReadinessSpec, timeout: float
    ) -> list[dict[str, Any]]:
        """Wait for every resource in the cohort to be ready.

        Returns the ready resources from the successful poll, or raises
        ReadinessTimeoutError with the last observation once `timeout`
        seconds have passed. A poll still in flight at the timeout is
        abandoned.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        polls = 0
        last: ReadinessObservation | None = None
        _LOGGER.info("Waiting up to %0.0fs for %s", timeout, spec)
        while True:
            try:
                observation, docs = await asyncio.wait_for(
                    self.poll(spec), max(deadline - loop.time(), 0)
                )
            except asyncio.TimeoutError as err:
                if last is None:
                    last = ReadinessObservation(
                        spec=spec, error="No poll finished before the timeout"
                    )
                raise _timed_out(spec, timeout, last) from err
            polls += 1
            observation.polls = polls
            last = observation
            if observation.ready:
                _LOGGER.info("%s: %s", spec, observation.summary_message)
                return docs
            _LOGGER.debug("%s poll %d: %s", spec, polls, observation.summary_message)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise _timed_out(spec, timeout, observation)
            await asyncio.sleep(min(self._interval, remaining))


def _timed_out(
    spec: ReadinessSpec, timeout: float, observation: ReadinessObservation
) -> ReadinessTimeoutError:
    return ReadinessTimeoutError(
        f"Timed out after {timeout:0.0f}s waiting for {spec}: "
        f"{observation.summary_message}",
        observation,
    )
