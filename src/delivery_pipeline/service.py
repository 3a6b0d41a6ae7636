# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery service wiring.

``DeliveryService`` builds the collaborators from a :class:`PipelineConfig`
and owns their lifecycle: the persistence layer, the ordered execution log
writer, the provider registry, the channel senders, the in-process queue
and the workflow worker.

Example:
    Running the service inside an event loop::

        service = DeliveryService(load_settings())
        await service.start()
        jobs = await service.enqueue([command.model_dump()])
        await jobs[0].done
        await service.stop()
"""

from __future__ import annotations

import asyncio
from typing import Any

from .channels import ChannelServices, EmailChannel, SendChannel
from .config import PipelineConfig
from .execution_log import ExecutionLogWriter
from .logger import get_logger
from .models import ExecutionDetail, Message
from .persistence import Persistence
from .prometheus import PipelineMetrics
from .providers import ProviderRegistry
from .queue import Job, MemoryQueue, QueueTransport
from .tracing import Tracer, traced
from .worker import WorkflowWorker

SMTP_CLEANUP_INTERVAL = 150


class DeliveryService:
    """Owns the pipeline collaborators and their background tasks.

    Attributes:
        config: Active configuration.
        persistence: SQLite store for reference data, messages and audit entries.
        metrics: Prometheus metrics shared by every component.
        execution_log: Ordered audit writer.
        channels: Channel senders keyed by channel type value.
        queue: Queue transport feeding the worker.
        worker: Workflow topic consumer pool.
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        persistence: Persistence | None = None,
        metrics: PipelineMetrics | None = None,
        providers: ProviderRegistry | None = None,
        queue: QueueTransport | None = None,
    ):
        self.config = config or PipelineConfig()
        self.logger = get_logger("DeliveryService")
        self.metrics = metrics or PipelineMetrics()
        self.persistence = persistence or Persistence(self.config.db_path, self.config.retention)
        self.execution_log = ExecutionLogWriter(
            self.persistence,
            metrics=self.metrics,
            queue_size=self.config.execution_log.queue_size,
            put_timeout=self.config.execution_log.put_timeout,
        )
        self.providers = providers or ProviderRegistry(self.config.providers)
        self.services = ChannelServices(
            store=self.persistence,
            execution_log=self.execution_log,
            config=self.config,
            metrics=self.metrics,
            providers=self.providers,
        )
        email = EmailChannel(self.services)
        self.channels: dict[str, SendChannel] = {email.channel.value: email}
        self.queue = queue or MemoryQueue(self.config.worker, metrics=self.metrics)
        self.tracer = Tracer(self.metrics)
        self.worker = WorkflowWorker(
            self.queue,
            self.channels,
            config=self.config.worker,
            tracer=self.tracer,
            metrics=self.metrics,
        )
        self._stop = asyncio.Event()
        self._task_cleanup: asyncio.Task | None = None

    async def init(self) -> None:
        await self.persistence.init_db()

    async def start(self) -> None:
        """Initialise storage and start the writer, the worker and maintenance."""
        await self.init()
        self._stop.clear()
        await self.execution_log.start()
        await self.worker.start()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")

    async def stop(self) -> None:
        """Stop consumers first, then drain pending audit entries."""
        self._stop.set()
        await self.worker.stop()
        if isinstance(self.queue, MemoryQueue):
            await self.queue.close()
        await asyncio.gather(*(t for t in [self._task_cleanup] if t), return_exceptions=True)
        self._task_cleanup = None
        await self.execution_log.stop()
        await self.providers.close()

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=SMTP_CLEANUP_INTERVAL)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                return
            try:
                await self.providers.smtp_pool.cleanup()
            except Exception as exc:
                self.logger.exception("Unhandled error in SMTP cleanup loop: %s", exc)

    async def enqueue(self, payloads: list[dict[str, Any]]) -> list[Job]:
        """Add trigger commands to the workflow topic."""
        if len(payloads) == 1:
            return [await self.queue.add(self.config.worker.topic, payloads[0])]
        return await self.queue.add_bulk(self.config.worker.topic, payloads)

    async def message_details(self, message_id: str) -> tuple[Message | None, list[ExecutionDetail]]:
        await self.execution_log.flush()
        message = await self.persistence.get_message(message_id)
        details = await self.persistence.list_execution_details(message_id=message_id)
        return message, details

    async def job_details(self, job_id: str) -> list[ExecutionDetail]:
        await self.execution_log.flush()
        return await self.persistence.list_execution_details(job_id=job_id)

    async def purge_expired(self, now_ts: int | None = None) -> int:
        """Remove messages whose retention window has elapsed."""
        removed = await traced(
            self.tracer, "remove-expired-messages", self.persistence.remove_expired_messages, now_ts
        )
        if removed:
            self.logger.info("Removed %d expired messages", removed)
        return removed


__all__ = ["DeliveryService"]
