from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass


@dataclass(frozen=True)
class TraceContext:
    run_id: str
    trace_id: str


_current: ContextVar[TraceContext | None] = ContextVar("xray_trace_context", default=None)


def current_context() -> TraceContext | None:
    return _current.get()


@contextmanager
def use_context(ctx: TraceContext) -> Iterator[TraceContext]:
    """Bind ``ctx`` for the current thread or asyncio task until the block exits."""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)
