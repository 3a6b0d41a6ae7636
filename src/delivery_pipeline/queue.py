# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Queue transport used by the workflow worker.

``QueueTransport`` is the seam to a durable broker. ``MemoryQueue`` is the
in-process reference transport: topic-addressed FIFO queues, single and
bulk enqueue, a completion future per job and a retry policy that
re-enqueues rejected jobs after a delay until ``max_attempts`` is reached.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import WorkerConfig
from .logger import get_logger
from .prometheus import PipelineMetrics


@dataclass
class Job:
    """One queued unit of work.

    Attributes:
        id: Opaque job identifier.
        topic: Queue topic the job was added to.
        payload: Job payload, a trigger command for the workflow topic.
        attempts: Number of deliveries so far (1 on the first delivery).
        done: Completion signal, resolved or rejected by the transport.
    """

    id: str
    topic: str
    payload: dict[str, Any]
    attempts: int = 0
    done: asyncio.Future | None = field(default=None, repr=False)


class QueueTransport(Protocol):
    async def add(self, topic: str, payload: dict[str, Any], job_id: str | None = None) -> Job: ...

    async def add_bulk(self, topic: str, payloads: list[dict[str, Any]]) -> list[Job]: ...

    async def get(self, topic: str) -> Job: ...

    async def complete(self, job: Job) -> None: ...

    async def fail(self, job: Job, error: BaseException) -> None: ...


class MemoryQueue:
    """In-process topic queue with transport-level retry."""

    def __init__(
        self,
        config: WorkerConfig | None = None,
        *,
        metrics: PipelineMetrics | None = None,
        logger=None,
    ):
        self.config = config or WorkerConfig()
        self.metrics = metrics
        self.logger = logger or get_logger("MemoryQueue")
        self._queues: dict[str, asyncio.Queue[Job]] = {}
        self._retry_tasks: set[asyncio.Task] = set()

    def _queue(self, topic: str) -> asyncio.Queue[Job]:
        if topic not in self._queues:
            self._queues[topic] = asyncio.Queue()
        return self._queues[topic]

    def depth(self, topic: str | None = None) -> int:
        if topic is not None:
            return self._queue(topic).qsize()
        return sum(q.qsize() for q in self._queues.values())

    def _update_depth(self) -> None:
        if self.metrics is not None:
            self.metrics.set_queue_depth(self.depth())

    async def add(self, topic: str, payload: dict[str, Any], job_id: str | None = None) -> Job:
        job = Job(
            id=job_id or payload.get("job_id") or uuid.uuid4().hex,
            topic=topic,
            payload=payload,
            done=asyncio.get_running_loop().create_future(),
        )
        await self._queue(topic).put(job)
        self._update_depth()
        return job

    async def add_bulk(self, topic: str, payloads: list[dict[str, Any]]) -> list[Job]:
        return [await self.add(topic, payload) for payload in payloads]

    async def get(self, topic: str) -> Job:
        job = await self._queue(topic).get()
        job.attempts += 1
        self._update_depth()
        return job

    async def complete(self, job: Job) -> None:
        if job.done is not None and not job.done.done():
            job.done.set_result(job.id)

    async def fail(self, job: Job, error: BaseException) -> None:
        """Reject ``job``; it is redelivered until ``max_attempts`` is reached."""
        if job.attempts < self.config.max_attempts:
            delays = self.config.retry_delays or (0.0,)
            delay = delays[min(job.attempts - 1, len(delays) - 1)]
            self.logger.warning(
                "Job %s failed on attempt %d/%d, retrying in %.1fs: %s",
                job.id,
                job.attempts,
                self.config.max_attempts,
                delay,
                error,
            )
            task = asyncio.create_task(self._requeue(job, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        self.logger.error("Job %s rejected after %d attempts: %s", job.id, job.attempts, error)
        if job.done is not None and not job.done.done():
            job.done.set_exception(error)

    async def _requeue(self, job: Job, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._queue(job.topic).put(job)
        self._update_depth()

    async def close(self) -> None:
        """Cancel pending redeliveries."""
        for task in list(self._retry_tasks):
            task.cancel()
        await asyncio.gather(*self._retry_tasks, return_exceptions=True)
        self._retry_tasks.clear()


__all__ = ["Job", "MemoryQueue", "QueueTransport"]
