# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scoped tracing for pipeline units of work.

A span is acquired with ``async with tracer.span(...)`` and is closed
exactly once on every exit path: success, recorded failure or raised
failure. Closed spans are reported to the Prometheus histogram and to the
optional ``on_close`` sink.

Example:
    Wrapping a call explicitly at the call site::

        result = await traced(tracer, "trigger-handler-queue", channel.execute, command, ctx)
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .logger import get_logger
from .prometheus import PipelineMetrics

T = TypeVar("T")

TRIGGER_HANDLER_TRANSACTION = "trigger-handler-queue"
TRIGGER_ENGINE_GROUP = "Trigger Engine"


@dataclass
class Span:
    """One traced unit of work."""

    name: str
    group: str
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    outcome: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def closed(self) -> bool:
        return self.ended_at is not None

    @property
    def duration(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return end - self.started_at

    def end(self, outcome: str) -> None:
        if self.closed:
            return
        self.ended_at = time.monotonic()
        self.outcome = outcome


class Tracer:
    """Produces spans and forwards closed ones to the configured sinks."""

    def __init__(
        self,
        metrics: PipelineMetrics | None = None,
        on_close: Callable[[Span], None] | None = None,
        logger=None,
    ):
        self.metrics = metrics
        self.on_close = on_close
        self.logger = logger or get_logger("Tracer")

    @asynccontextmanager
    async def span(self, name: str, group: str = TRIGGER_ENGINE_GROUP, **attributes: Any) -> AsyncIterator[Span]:
        span = Span(name=name, group=group, attributes=dict(attributes))
        outcome = "error"
        try:
            yield span
            outcome = "success"
        finally:
            span.end(outcome)
            self._report(span)

    def _report(self, span: Span) -> None:
        if self.metrics is not None:
            self.metrics.observe_span(span.name, span.duration)
        self.logger.debug(
            "Span %s/%s closed with %s after %.3fs", span.group, span.name, span.outcome, span.duration
        )
        if self.on_close is not None:
            self.on_close(span)


async def traced(
    tracer: Tracer,
    name: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    group: str = TRIGGER_ENGINE_GROUP,
    **kwargs: Any,
) -> T:
    """Run ``func(*args, **kwargs)`` inside a span named ``name``."""
    async with tracer.span(name, group):
        return await func(*args, **kwargs)


__all__ = ["Span", "TRIGGER_ENGINE_GROUP", "TRIGGER_HANDLER_TRANSACTION", "Tracer", "traced"]
