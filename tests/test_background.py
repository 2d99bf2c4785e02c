"""Tests for background task utilities."""

from __future__ import annotations

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars
from structlog.testing import capture_logs

from slack_bugsnag_bridge.background import run_async


def test_run_async_propagates_structlog_context():
    clear_contextvars()
    bind_contextvars(trace_id="trace-123", component="slack")
    captured: dict[str, str] = {}

    future = run_async(lambda: captured.update(get_contextvars()))
    future.result(timeout=1)

    assert captured == {"trace_id": "trace-123", "component": "slack"}

    clear_contextvars()


def test_explicit_trace_id_does_not_leak_into_caller():
    clear_contextvars()
    captured: dict[str, str] = {}

    future = run_async(lambda: captured.update(get_contextvars()), trace_id="trace-456")
    future.result(timeout=1)

    assert captured.get("trace_id") == "trace-456"
    assert "trace_id" not in get_contextvars()


def test_run_async_passes_arguments_and_returns_result():
    future = run_async(lambda left, right=0: left + right, 2, right=3)

    assert future.result(timeout=1) == 5


def test_background_logs_carry_trace_id():
    clear_contextvars()

    with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
        future = run_async(lambda: structlog.get_logger().info("slack_interaction_processed"), trace_id="trace-789")
        future.result(timeout=1)

    assert logs[0]["event"] == "slack_interaction_processed"
    assert logs[0]["trace_id"] == "trace-789"

    clear_contextvars()
