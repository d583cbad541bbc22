"""Correlation IDs for cross-tool tracing.

A correlation ID ties together work that spans several tools, e.g. an
emergency-room run handing over to ``psa diagnose`` which then queries rules,
the reasoning engine and AI fallback. Format: ``corr-`` followed by 16
lowercase hex characters.

The ID is process scoped: ``init()`` fixes it once per run and every later
call returns the same value.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time

_PREFIX = "corr-"

_lock = threading.Lock()
_correlation_id: str | None = None


def generate() -> str:
    """Generate a new correlation ID (timestamp + random component)."""
    stamp = time.time_ns() & 0xFFFFFFFF
    return f"{_PREFIX}{stamp:08x}{secrets.randbits(32):08x}"


def init(provided: str | None = None) -> str:
    """Initialize the process correlation ID.

    Uses ``provided`` when given, otherwise generates one. Only the first
    call has any effect.
    """
    global _correlation_id
    with _lock:
        if _correlation_id is None:
            _correlation_id = provided or generate()
        return _correlation_id


def get() -> str | None:
    """Current correlation ID, or None before ``init()``."""
    return _correlation_id


def bind(logger: logging.Logger, correlation_id: str | None = None) -> logging.LoggerAdapter:
    """Wrap a logger so every record carries the correlation ID."""
    return logging.LoggerAdapter(
        logger, {"correlation_id": correlation_id or get() or "none"}
    )


class CorrelationFilter(logging.Filter):
    """Stamp ``record.correlation_id`` on records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get() or "none"
        return True
