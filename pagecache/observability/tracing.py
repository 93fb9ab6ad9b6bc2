"""Tracing helpers for page fetch and commit stages."""
from __future__ import annotations

import contextlib
import time
from typing import Any, Iterator

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("pagecache.trace")


def set_context(*, job_id: str, collection: str) -> None:
    bind_contextvars(job_id=job_id, collection=collection)
    _logger().debug("trace_context", job_id=job_id, collection=collection)


def clear_context() -> None:
    unbind_contextvars("job_id", "collection")


@contextlib.contextmanager
def span(*, name: str, **fields: Any) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, elapsed_ms=elapsed_ms, **fields)


def log_fetch_result(*, collection: str, status: int, records: int, has_more: bool, elapsed_ms: int) -> None:
    _logger().info(
        "fetch_result",
        collection=collection,
        status=status,
        records=records,
        has_more=has_more,
        elapsed_ms=elapsed_ms,
    )
