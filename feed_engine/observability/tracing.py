"""Correlation identifiers for feed maintenance logs."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from feed_engine.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY = "correlation_id"


@contextmanager
def correlation_scope(existing_id: str | None = None, **extra: str) -> Iterator[str]:
    """Bind a correlation id (plus optional extra keys) for the context's lifetime.

    Lifecycle flows pass ``event_id=...`` and migration jobs pass ``job=...`` so
    every log line emitted inside the scope can be tied back to its trigger.
    """

    correlation_id = existing_id or uuid4().hex
    bind_context(**{CORRELATION_ID_KEY: correlation_id}, **extra)
    try:
        yield correlation_id
    finally:
        unbind_context(CORRELATION_ID_KEY, *extra)


__all__ = ["CORRELATION_ID_KEY", "correlation_scope"]
