# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Workflow worker: consumes trigger jobs and runs the channel pipelines.

Each consumer task takes one job at a time from the workflow topic and
runs it inside a ``trigger-handler-queue`` span. The job completes when
the pipeline returns (including recorded business failures) and is
rejected when a fatal error escapes it, leaving retries to the transport.
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import ValidationError

from .channels import SendChannel
from .config import WorkerConfig
from .context import PipelineContext
from .errors import UnsupportedChannel
from .logger import get_logger
from .models import ChannelType, TriggerCommand
from .prometheus import PipelineMetrics
from .queue import Job, QueueTransport
from .tracing import TRIGGER_ENGINE_GROUP, TRIGGER_HANDLER_TRANSACTION, Tracer

POLL_INTERVAL = 0.5


class WorkflowWorker:
    """Pool of queue consumers for the workflow topic.

    Attributes:
        queue: Queue transport to consume from.
        channels: Channel senders keyed by channel type value.
        config: Worker settings (concurrency, topic).
    """

    def __init__(
        self,
        queue: QueueTransport,
        channels: dict[str, SendChannel],
        *,
        config: WorkerConfig | None = None,
        tracer: Tracer | None = None,
        metrics: PipelineMetrics | None = None,
        logger=None,
    ):
        self.queue = queue
        self.channels = dict(channels)
        self.config = config or WorkerConfig()
        self.metrics = metrics
        self.tracer = tracer or Tracer(metrics)
        self.logger = logger or get_logger("WorkflowWorker")
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self._consume_loop(index), name=f"workflow-consumer-{index}")
            for index in range(self.config.concurrency)
        ]
        self.logger.info(
            "Workflow worker started with %d consumers on topic '%s'", self.config.concurrency, self.config.topic
        )

    async def stop(self) -> None:
        """Stop consuming; jobs already taken are allowed to finish."""
        self._stop.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _consume_loop(self, index: int) -> None:
        while not self._stop.is_set():
            try:
                job = await asyncio.wait_for(self.queue.get(self.config.topic), timeout=POLL_INTERVAL)
            except asyncio.TimeoutError:
                continue
            try:
                await self.process_job(job)
            except Exception as exc:
                self.logger.exception("Unhandled error in workflow consumer %d: %s", index, exc)

    async def process_job(self, job: Job) -> bool:
        """Run one job and resolve or reject it. Returns True on completion."""
        context = PipelineContext(
            job_id=job.id,
            transaction_id=job.payload.get("transaction_id"),
            attempt=max(1, job.attempts),
        )
        try:
            async with self.tracer.span(
                TRIGGER_HANDLER_TRANSACTION, TRIGGER_ENGINE_GROUP, job_id=job.id
            ) as span:
                context.span = span
                await self.handle(job.payload, context)
        except Exception as exc:
            context.logger.error("Job rejected: %s", exc)
            if self.metrics is not None:
                self.metrics.inc_job("rejected")
            await self.queue.fail(job, exc)
            return False

        if self.metrics is not None:
            self.metrics.inc_job("completed")
        await self.queue.complete(job)
        return True

    async def handle(self, payload: dict[str, Any], context: PipelineContext) -> None:
        """Validate ``payload`` and dispatch it to its channel sender.

        Raises:
            pydantic.ValidationError: The payload is not a trigger command.
            UnsupportedChannel: No sender is registered for the step channel.
        """
        try:
            command = TriggerCommand.model_validate(payload)
        except ValidationError:
            context.logger.error("Invalid trigger command payload")
            raise
        channel = command.step.channel if command.step is not None else ChannelType.EMAIL.value
        sender = self.channels.get(ChannelType(channel).value)
        if sender is None:
            raise UnsupportedChannel(f"No sender registered for channel '{channel}'")
        await sender.execute(command, context)


__all__ = ["POLL_INTERVAL", "WorkflowWorker"]
