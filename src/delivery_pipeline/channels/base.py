# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared channel sender interface and its explicit collaborators.

Channel senders do not inherit behaviour. Each one implements
:class:`SendChannel` and receives a :class:`ChannelServices` bundle holding
the lookups and sinks it needs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..compiler import SubstitutionCompiler, TemplateCompiler
from ..config import PipelineConfig
from ..context import PipelineContext
from ..errors import SubscriberNotFound
from ..execution_log import ExecutionLogWriter
from ..integrations import IntegrationSelector
from ..models import (
    ChannelType,
    DetailCode,
    ExecutionDetail,
    ExecutionDetailSource,
    ExecutionDetailStatus,
    Subscriber,
    Tenant,
    TriggerCommand,
)
from ..persistence import Persistence
from ..prometheus import PipelineMetrics
from ..providers import ProviderRegistry


class SendChannel(Protocol):
    """A per-channel delivery pipeline."""

    channel: ChannelType

    async def execute(self, command: TriggerCommand, context: PipelineContext) -> None: ...


@dataclass
class ChannelServices:
    """Collaborators shared by channel senders.

    Attributes:
        store: Reference lookups and the message record store.
        execution_log: Ordered audit writer.
        selector: Integration selector bound to ``store``.
        compiler: Template compiler.
        providers: Provider handler registry.
        metrics: Prometheus metrics.
        config: Pipeline configuration.
    """

    store: Persistence
    execution_log: ExecutionLogWriter
    config: PipelineConfig = field(default_factory=PipelineConfig)
    metrics: PipelineMetrics = field(default_factory=PipelineMetrics)
    selector: IntegrationSelector | None = None
    compiler: TemplateCompiler | None = None
    providers: ProviderRegistry | None = None

    def __post_init__(self) -> None:
        if self.selector is None:
            self.selector = IntegrationSelector(self.store)
        if self.compiler is None:
            self.compiler = SubstitutionCompiler(self.store)
        if self.providers is None:
            self.providers = ProviderRegistry(self.config.providers)

    async def get_subscriber(self, command: TriggerCommand) -> Subscriber:
        subscriber = await self.store.get_subscriber(command.environment_id, command.subscriber_id)
        if subscriber is None:
            raise SubscriberNotFound(command.subscriber_id)
        return subscriber

    async def get_actor(self, command: TriggerCommand) -> Subscriber | None:
        if not command.actor_id:
            return None
        return await self.store.get_subscriber(command.environment_id, command.actor_id)

    async def get_tenant(self, command: TriggerCommand) -> Tenant | None:
        if not command.tenant:
            return None
        return await self.store.get_tenant(command.environment_id, command.tenant)

    async def record(
        self,
        command: TriggerCommand,
        context: PipelineContext,
        detail: DetailCode,
        status: ExecutionDetailStatus,
        *,
        message_id: str | None = None,
        raw: Any = None,
        source: ExecutionDetailSource = ExecutionDetailSource.INTERNAL,
    ) -> None:
        """Issue one audit entry for ``command``.

        Non-string ``raw`` values are serialised to JSON.
        """
        if raw is not None and not isinstance(raw, str):
            raw = json.dumps(raw, default=str)
        entry = ExecutionDetail.for_command(
            command,
            message_id=message_id,
            detail=detail,
            source=source,
            status=status,
            is_test=False,
            is_retry=context.is_retry,
            raw=raw,
        )
        await self.execution_log.add(entry)


__all__ = ["ChannelServices", "SendChannel"]
