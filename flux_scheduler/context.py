"""Utilities for context tracing.

Spans nest through a context variable so concurrently running units each
carry their own trace label, e.g. `run_once > scheduler > apply apps`.
"""

from collections import defaultdict
import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


class TraceCollector:
    """Accumulates the total duration and count of every finished span."""

    def __init__(self) -> None:
        self.timings: dict[str, float] = defaultdict(float)
        self.counts: dict[str, int] = defaultdict(int)

    def add(self, name: str, duration: float) -> None:
        self.timings[name] += duration
        self.counts[name] += 1


_collector: contextvars.ContextVar[TraceCollector | None] = contextvars.ContextVar(
    "_collector", default=None
)


@contextmanager
def get_trace_collector() -> Generator[TraceCollector, None, None]:
    """Collect span timings for everything run within the context."""
    collector = TraceCollector()
    token = _collector.set(collector)
    try:
        yield collector
    finally:
        _collector.reset(token)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        elapsed = perf_counter() - t1
        trace.reset(token)
        if (collector := _collector.get()) is not None:
            collector.add(name, elapsed)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, elapsed)
