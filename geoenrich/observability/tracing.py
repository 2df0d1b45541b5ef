"""Tracing helpers for provider calls and queue jobs."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

_JOB_KEYS = ("job_id", "record_id", "attempt")


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("geoenrich.trace")


def set_job_context(*, job_id: str, record_id: str, attempt: int) -> None:
    bind_contextvars(job_id=job_id, record_id=record_id, attempt=attempt)
    _logger().debug("trace_context")


def clear_job_context() -> None:
    unbind_contextvars(*_JOB_KEYS)


@contextlib.contextmanager
def span(*, name: str, ip: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, ip=ip, elapsed_ms=elapsed_ms)


def log_provider_failure(*, provider: str, ip: str, reason: str) -> None:
    _logger().warning("provider_failed", provider=provider, ip=ip, reason=reason)


def log_retry(*, attempt: int, delay_seconds: float, reason: str) -> None:
    _logger().warning("job_retry_scheduled", attempt=attempt, delay_seconds=delay_seconds, reason=reason)
