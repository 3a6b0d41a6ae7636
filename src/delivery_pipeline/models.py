# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the notification delivery pipeline.

This module defines the data models shared by the pipeline components
for validation, serialization and type safety.

Models:
    - Integration: provider configuration scoped to org/env/channel
    - Subscriber, Environment, Tenant, Layout: read-only reference entities
    - NotificationStep, EmailTemplate: workflow definition for one channel
    - TriggerCommand: payload of a workflow-topic job
    - Message: persisted record of one delivery attempt
    - ExecutionDetail: immutable audit entry
    - EmailOptions, SendResult: uniform provider message and response
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now() -> int:
    return int(time.time())


class ChannelType(str, Enum):
    """Delivery channels. Only email has a full pipeline."""

    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"
    PUSH = "push"
    CHAT = "chat"


class ExecutionDetailStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    WARNING = "WARNING"


class ExecutionDetailSource(str, Enum):
    INTERNAL = "INTERNAL"
    WEBHOOK = "WEBHOOK"
    CREDENTIALS = "CREDENTIALS"
    PAYLOAD = "PAYLOAD"


class DetailCode(str, Enum):
    """Enumerated audit codes written by the pipeline."""

    INTEGRATION_INSTANCE_SELECTED = "INTEGRATION_INSTANCE_SELECTED"
    SUBSCRIBER_NO_ACTIVE_INTEGRATION = "SUBSCRIBER_NO_ACTIVE_INTEGRATION"
    LIMIT_PASSED_INTEGRATION = "LIMIT_PASSED_INTEGRATION"
    SUBSCRIBER_NO_CHANNEL_DETAILS = "SUBSCRIBER_NO_CHANNEL_DETAILS"
    LAYOUT_NOT_FOUND = "LAYOUT_NOT_FOUND"
    MESSAGE_CREATED = "MESSAGE_CREATED"
    MESSAGE_SENT = "MESSAGE_SENT"
    MESSAGE_CONTENT_NOT_GENERATED = "MESSAGE_CONTENT_NOT_GENERATED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    REPLY_CALLBACK_MISSING_CALLBACK_URL = "REPLY_CALLBACK_MISSING_CALLBACK_URL"
    REPLY_CALLBACK_NOT_CONFIGURED = "REPLY_CALLBACK_NOT_CONFIGURED"
    REPLY_CALLBACK_MISSING_MX_RECORD_CONFIGURATION = "REPLY_CALLBACK_MISSING_MX_RECORD_CONFIGURATION"
    REPLY_CALLBACK_MISSING_INBOUND_PARSE_DOMAIN = "REPLY_CALLBACK_MISSING_INBOUND_PARSE_DOMAIN"


# Reference entities -------------------------------------------------------


class Integration(BaseModel):
    """Provider credential set scoped to an organization/environment/channel.

    Attributes:
        identifier: User-facing identifier used for explicit overrides.
        provider_id: Provider key resolved by the adapter registry.
        credentials: Free-form provider credentials (``from``, ``host`` ...).
        primary: Preferred among several active integrations.
        priority: Lower numbers win the tie-break after ``primary``.
        conditions: Tenant routing rules, see ``IntegrationSelector``.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str
    identifier: str
    name: str | None = None
    organization_id: str
    environment_id: str
    channel: ChannelType = ChannelType.EMAIL
    provider_id: str
    credentials: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    primary: bool = False
    priority: int = 0
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    created_at: int = Field(default_factory=_now)


class Subscriber(BaseModel):
    id: str
    subscriber_id: str
    environment_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class EnvironmentDns(BaseModel):
    mx_record_configured: bool = False
    inbound_parse_domain: str | None = None


class Environment(BaseModel):
    """Environment record; DNS is only read for reply-to derivation."""

    id: str
    organization_id: str
    name: str | None = None
    dns: EnvironmentDns | None = None


class Tenant(BaseModel):
    id: str
    environment_id: str
    identifier: str
    name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class Layout(BaseModel):
    """Layout wrapping compiled content; ``{{{body}}}`` marks the slot."""

    id: str
    environment_id: str
    identifier: str
    name: str | None = None
    content: str = "{{{body}}}"
    is_default: bool = False


# Workflow definition -------------------------------------------------------


class EmailTemplate(BaseModel):
    id: str
    subject: str = ""
    content: str | list[dict[str, Any]] = ""
    sender_name: str | None = None
    preheader: str | None = None
    content_type: str = "editor"
    layout_id: str | None = None


class ReplyCallback(BaseModel):
    active: bool = False
    url: str | None = None


class NotificationStep(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str | None = None
    channel: ChannelType = ChannelType.EMAIL
    template: EmailTemplate | None = None
    reply_callback: ReplyCallback | None = None


class TriggerCommand(BaseModel):
    """Payload carried by a workflow-topic job.

    ``overrides`` is the free-form override map; keys inside it keep the
    casing used by API callers (``integrationIdentifier``, ``replyTo``,
    ``senderName`` ...). ``events`` is the digest event list.
    """

    model_config = ConfigDict(use_enum_values=True)

    identifier: str
    transaction_id: str
    organization_id: str
    environment_id: str
    user_id: str | None = None
    subscriber_id: str
    notification_id: str
    template_id: str
    job_id: str
    step: NotificationStep | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    overrides: dict[str, Any] = Field(default_factory=dict)
    events: list[dict[str, Any]] = Field(default_factory=list)
    tenant: str | None = None
    actor_id: str | None = None


# Delivery records ----------------------------------------------------------


class Message(BaseModel):
    """Persisted record of one delivery attempt.

    Created once before compilation; updated with compiled content and
    then with the provider-assigned ``identifier``.
    """

    model_config = ConfigDict(use_enum_values=True)

    id: str
    organization_id: str
    environment_id: str
    notification_id: str
    subscriber_id: str
    template_id: str
    message_template_id: str | None = None
    job_id: str
    transaction_id: str
    template_identifier: str | None = None
    channel: ChannelType = ChannelType.EMAIL
    email: str | None = None
    provider_id: str | None = None
    subject: str | None = None
    content: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    overrides: dict[str, Any] = Field(default_factory=dict)
    identifier: str | None = None
    created_at: int = Field(default_factory=_now)
    expire_at: int | None = None


class ExecutionDetail(BaseModel):
    """Immutable audit entry describing one pipeline decision."""

    model_config = ConfigDict(use_enum_values=True, frozen=True)

    id: int | None = None
    message_id: str | None = None
    job_id: str | None = None
    notification_id: str | None = None
    transaction_id: str | None = None
    subscriber_id: str | None = None
    organization_id: str | None = None
    environment_id: str | None = None
    detail: DetailCode
    source: ExecutionDetailSource = ExecutionDetailSource.INTERNAL
    status: ExecutionDetailStatus
    is_test: bool = False
    is_retry: bool = False
    raw: str | None = None
    created_at: int = Field(default_factory=_now)

    @classmethod
    def for_command(cls, command: TriggerCommand, **fields: Any) -> ExecutionDetail:
        """Build an entry pre-filled with the job linkage of ``command``."""
        return cls(
            job_id=command.job_id,
            notification_id=command.notification_id,
            transaction_id=command.transaction_id,
            subscriber_id=command.subscriber_id,
            organization_id=command.organization_id,
            environment_id=command.environment_id,
            **fields,
        )


# Provider contract ---------------------------------------------------------


class EmailAttachment(BaseModel):
    """Attachment carried in a trigger payload.

    ``file`` holds base64-encoded content.
    """

    file: str
    mime: str | None = None
    name: str
    channels: list[str] | None = None


class EmailOptions(BaseModel):
    """Uniform message handed to every email provider handler.

    Serialised with camelCase keys (``replyTo``, ``ipPoolName``,
    ``customData``); ``from_address`` is exposed as ``from``.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    id: str | None = None
    to: list[str]
    from_address: Annotated[str, Field(alias="from")]
    subject: str = ""
    html: str = ""
    text: str | None = None
    attachments: list[EmailAttachment] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    reply_to: str | None = None
    ip_pool_name: str | None = None
    custom_data: dict[str, Any] = Field(default_factory=dict)
    notification_details: dict[str, Any] = Field(default_factory=dict)
    payload_details: dict[str, Any] | None = None


class SendResult(BaseModel):
    """Normalised provider response."""

    provider_message_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class CompiledEmail(BaseModel):
    subject: str = ""
    html_body: str = ""
    plain_text: str = ""
    sender_name: str | None = None


__all__ = [
    "ChannelType",
    "CompiledEmail",
    "DetailCode",
    "EmailAttachment",
    "EmailOptions",
    "EmailTemplate",
    "Environment",
    "EnvironmentDns",
    "ExecutionDetail",
    "ExecutionDetailSource",
    "ExecutionDetailStatus",
    "Integration",
    "Layout",
    "Message",
    "NotificationStep",
    "ReplyCallback",
    "SendResult",
    "Subscriber",
    "Tenant",
    "TriggerCommand",
]
