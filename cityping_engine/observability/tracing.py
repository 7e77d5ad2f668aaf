"""Correlation identifiers shared by every log entry of one use case run."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

from cityping_engine.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY = "correlation_id"


@contextmanager
def correlation_scope(existing_id: str | None = None, **context: Any) -> Iterator[str]:
    """Bind a correlation id, plus optional run context such as ``user_id``.

    Contextvars are per thread, so each worker of a fan-out binds its own
    scope. Everything bound here is unbound on exit.
    """
    correlation_id = existing_id or uuid4().hex
    bind_context(**{CORRELATION_ID_KEY: correlation_id}, **context)
    try:
        yield correlation_id
    finally:
        unbind_context(CORRELATION_ID_KEY, *context)


__all__ = ["CORRELATION_ID_KEY", "correlation_scope"]
