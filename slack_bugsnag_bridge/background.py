"""Shared worker pool for Slack interactions processed after the HTTP ack."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from contextvars import copy_context
from typing import Any, Callable

from structlog.contextvars import bind_contextvars

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="slack-interaction")


def run_async(
    func: Callable[..., Any],
    /,
    *args: Any,
    trace_id: str | None = None,
    **kwargs: Any,
) -> Future:
    """Run *func* on the pool with the caller's context vars, optionally tagged with *trace_id*."""

    context = copy_context()
    if trace_id is not None:
        context.run(bind_contextvars, trace_id=trace_id)

    return _executor.submit(context.run, func, *args, **kwargs)
