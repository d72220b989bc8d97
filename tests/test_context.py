"""Tests for step tracing."""

import logging

import pytest

from monitoring_lifecycle.context import current_step, step_context


def test_step_context_nesting() -> None:
    """Test nested steps are labelled with their parents."""
    assert current_step() == ""
    with step_context("upgrade") as outer:
        assert outer == "upgrade"
        with step_context("wait-ready") as inner:
            assert inner == "upgrade > wait-ready"
            assert current_step() == "upgrade > wait-ready"
        assert current_step() == "upgrade"
    assert current_step() == ""


def test_step_context_failure(caplog: pytest.LogCaptureFixture) -> None:
    """Test a failing step is logged and the error propagates."""
    caplog.set_level(logging.DEBUG, logger="monitoring_lifecycle.context")
    with pytest.raises(ValueError, match="boom"):
        with step_context("install"):
            raise ValueError("boom")

    assert current_step() == ""
    messages = [record.getMessage() for record in caplog.records]
    assert messages[0] == "[Step] > install"
    assert messages[1] == "[Step] ! install failed: boom"
    assert messages[2].startswith("[Step] < install (")
