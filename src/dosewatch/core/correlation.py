"""Correlation ids for tracing one logical operation across log lines.

A correlation id lives in a :class:`~contextvars.ContextVar` so that it follows
asyncio tasks automatically, and is also bound into ``structlog.contextvars``
so direct structlog loggers see it without going through the stdlib formatter.

Usage::

    result = await with_context(lambda: deliver(candidate))

    with correlation_scope(entry.correlation_id):
        logger.info("Replaying dead-letter entry")
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TypeVar

import structlog

T = TypeVar("T")

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_id() -> str:
    """Return a fresh, opaque correlation id."""
    return uuid.uuid4().hex


def current_id() -> str | None:
    """Return the correlation id bound to the current context, if any."""
    return _correlation_id.get()


@contextmanager
def correlation_scope(seed: str | None = None) -> Iterator[str]:
    """Bind *seed* (or a new id) for the duration of the ``with`` block.

    The previous id is restored on exit, so scopes nest correctly.
    """
    correlation_id = seed or new_id()
    token = _correlation_id.set(correlation_id)
    previous = structlog.contextvars.get_contextvars().get("correlation_id")
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)
        if previous is None:
            structlog.contextvars.unbind_contextvars("correlation_id")
        else:
            structlog.contextvars.bind_contextvars(correlation_id=previous)


async def with_context(
    fn: Callable[[], Awaitable[T]],
    seed: str | None = None,
) -> T:
    """Await ``fn()`` with a correlation id bound for its whole duration."""
    with correlation_scope(seed):
        return await fn()
