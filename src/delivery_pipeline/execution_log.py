# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Append-only execution log writer.

The writer buffers audit entries in an ``asyncio.Queue`` drained by a
single background task, so callers never wait for the database write while
entries still reach the sink in the exact order they were issued.

Example:
    Wiring the writer to the persistence layer::

        writer = ExecutionLogWriter(persistence)
        await writer.start()
        await writer.add(ExecutionDetail.for_command(command, detail=..., status=...))
        await writer.stop()  # drains pending entries first
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from .logger import get_logger
from .models import ExecutionDetail
from .prometheus import PipelineMetrics


class ExecutionLogSink(Protocol):
    async def insert_execution_detail(self, entry: ExecutionDetail) -> int: ...


_STOP = object()


class ExecutionLogWriter:
    """Ordered asynchronous writer for :class:`ExecutionDetail` entries.

    When the background task is not running (``start()`` was never called)
    entries are written inline, which keeps the ordering guarantee for
    short-lived callers such as the CLI.

    Attributes:
        sink: Storage receiving the entries.
        written: Number of entries successfully stored.
        failed: Number of entries the sink rejected.
    """

    def __init__(
        self,
        sink: ExecutionLogSink,
        *,
        metrics: PipelineMetrics | None = None,
        logger=None,
        queue_size: int = 10000,
        put_timeout: float = 5.0,
    ):
        self.sink = sink
        self.metrics = metrics
        self.logger = logger or get_logger("ExecutionLog")
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=queue_size)
        self._put_timeout = put_timeout
        self._task: asyncio.Task | None = None
        self.written = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._drain_loop(), name="execution-log-writer")

    async def stop(self) -> None:
        """Write every pending entry, then stop the background task."""
        if not self.running:
            return
        await self._queue.put(_STOP)
        await self._task
        self._task = None

    async def flush(self) -> None:
        """Wait until every entry issued so far reached the sink."""
        if self.running:
            await self._queue.join()

    async def add(self, entry: ExecutionDetail) -> None:
        """Issue one entry. Order across calls is preserved."""
        if self.metrics is not None:
            self.metrics.inc_execution_detail(str(entry.detail), str(entry.status))
        if not self.running:
            await self._write(entry)
            return
        try:
            await asyncio.wait_for(self._queue.put(entry), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Execution log queue full for %.1fs, writing entry %s inline",
                self._put_timeout,
                entry.detail,
            )
            await self.flush()
            await self._write(entry)

    async def _write(self, entry: ExecutionDetail) -> None:
        try:
            await self.sink.insert_execution_detail(entry)
        except Exception as exc:
            self.failed += 1
            self.logger.error(
                "Failed to store execution detail %s for message %s: %s",
                entry.detail,
                entry.message_id or "-",
                exc,
            )
            return
        self.written += 1

    async def _drain_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                await self._write(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()


__all__ = ["ExecutionLogSink", "ExecutionLogWriter"]
