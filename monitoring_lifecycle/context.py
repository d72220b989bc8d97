"""Utilities for tracing the steps of a lifecycle run.

Steps nest, so a readiness wait inside the upgrade flow is reported as
`upgrade > wait-ready > Deployment/cattle-monitoring-system`.
"""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


_steps: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "steps", default=()
)


def current_step() -> str:
    """Return the label of the innermost step being traced."""
    return " > ".join(_steps.get())


@contextmanager
def step_context(name: str) -> Generator[str, None, None]:
    """Trace a named step, yielding its full label."""
    steps = _steps.get() + (name,)
    token = _steps.set(steps)
    label = " > ".join(steps)
    started = perf_counter()
    _LOGGER.debug("[Step] > %s", label)
    try:
        yield label
    except Exception as err:
        _LOGGER.debug("[Step] ! %s failed: %s", label, err)
        raise
    finally:
        _steps.reset(token)
        _LOGGER.debug("[Step] < %s (%0.2fs)", label, perf_counter() - started)
