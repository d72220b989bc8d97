"""Exceptions related to monitoring-lifecycle."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .probe import ProbeResult
    from .readiness import ReadinessObservation

__all__ = [
    "LifecycleException",
    "SetupError",
    "CommandException",
    "InstallError",
    "VersionMismatchError",
    "ReadinessTimeoutError",
    "DeadlineExceededError",
    "ProbeError",
    "AlertConfigError",
    "DecodeError",
    "StructuralEditError",
    "ResourceError",
    "ResourceConflictError",
    "ResourceNotFoundError",
]


class LifecycleException(Exception):
    """Generic base exception used for this library."""


class SetupError(LifecycleException):
    """Raised when the cluster or project identity can't be resolved."""


class CommandException(LifecycleException):
    """Raised when there is a failure running a subcommand."""


class InstallError(CommandException):
    """Raised when the chart manager fails to install, upgrade or inspect a chart."""


class VersionMismatchError(InstallError):
    """Raised when the observed chart version is not the one that was requested."""

    def __init__(self, expected: str, observed: str | None) -> None:
        super().__init__(
            f"Expected chart version {expected} but found {observed or 'none'}"
        )
        self.expected = expected
        self.observed = observed


class ReadinessTimeoutError(LifecycleException, TimeoutError):
    """Raised when a cohort of resources did not become ready in time."""

    def __init__(
        self, message: str, observation: "ReadinessObservation | None" = None
    ) -> None:
        super().__init__(message)
        self.observation = observation


class DeadlineExceededError(ReadinessTimeoutError):
    """Raised when the overall run deadline has passed before a step could start."""


class ProbeError(LifecycleException):
    """Raised when one or more endpoints are unreachable."""

    def __init__(
        self, message: str, results: "list[ProbeResult] | None" = None
    ) -> None:
        super().__init__(message)
        self.results = results or []


class AlertConfigError(LifecycleException):
    """Base class for alert configuration document problems."""


class DecodeError(AlertConfigError):
    """Raised when the alert configuration blob can't be decoded."""


class StructuralEditError(AlertConfigError):
    """Raised when the alert configuration is missing the structure to edit."""


class ResourceError(LifecycleException):
    """Raised when a request to the cluster resource API fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ResourceConflictError(ResourceError):
    """Raised when a resource already exists or was modified concurrently."""


class ResourceNotFoundError(ResourceError):
    """Raised when a resource does not exist."""
