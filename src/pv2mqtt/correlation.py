"""Correlation ids for the bridge's event loop.

Every event taken off the server queue is handled inside its own
``correlation_context()`` so that the log lines produced by a dispatch, a
reconciliation pass or a hub event batch can be grouped together. Producer
tasks call ``ensure_correlation_id()`` once at their entry point.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "pv2mqtt_correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Generator[str]:
    """Scope a correlation id, generating one when not given.

    The previous id is restored on exit, so nested scopes (a reconciliation
    pass triggered from within a dispatch) report their own id only while active.
    """
    token = _correlation_id.set(correlation_id or generate_correlation_id())
    try:
        yield _correlation_id.get() or ""
    finally:
        _correlation_id.reset(token)


def ensure_correlation_id() -> str:
    """Return the current correlation id, setting a new one if none is active."""
    current_id = _correlation_id.get()
    if current_id is None:
        current_id = generate_correlation_id()
        _correlation_id.set(current_id)
    return current_id
