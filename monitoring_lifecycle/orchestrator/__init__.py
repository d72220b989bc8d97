"""Orchestrator for monitoring-lifecycle.

This module provides the orchestrator that drives the install, validation and
upgrade of the monitoring stack.
"""

from .orchestrator import (
    InstallOutcome,
    LifecycleOrchestrator,
    LifecycleState,
    RunReport,
)

__all__ = [
    "InstallOutcome",
    "LifecycleOrchestrator",
    "LifecycleState",
    "RunReport",
]
