# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email channel pipeline.

``EmailChannel.execute`` takes one trigger command from subscriber
resolution to a terminal delivery outcome:

1. resolve the subscriber (missing subscriber is fatal)
2. select the integration (selection errors are recorded, no message)
3. check the workflow step and template (missing ones are fatal)
4. resolve the recipient address (missing address is recorded, no message)
5. resolve tenant, layout override and integration accounting concurrently
6. merge channel and provider overrides
7. create the message record
8. derive the reply-to address when reply callbacks are enabled
9. compile the template (failure runs the error-template path)
10. store compiled content when content retention is enabled
11. record ``MESSAGE_CREATED``
12. dispatch through the provider registry and record the outcome

Every recorded failure writes exactly one audit entry and returns normally.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from pydantic import ValidationError

from ..context import PipelineContext
from ..errors import (
    ChannelStepNotFound,
    CompilationFailed,
    EnvironmentNotFound,
    ExplicitIntegrationNotFound,
    NoActiveIntegration,
    ProviderDispatchFailed,
    UnknownProvider,
)
from ..models import (
    ChannelType,
    CompiledEmail,
    DetailCode,
    EmailAttachment,
    EmailOptions,
    EmailTemplate,
    ExecutionDetailStatus,
    Integration,
    Message,
    NotificationStep,
    Subscriber,
    Tenant,
    TriggerCommand,
)
from ..providers import EmailProviderId
from .base import ChannelServices

REPLY_TO_PREFIX = "parse"
REPLY_TO_DELIMITER = "-nv-e="


def derive_reply_to(transaction_id: str, environment_id: str, inbound_parse_domain: str) -> str:
    """Build the inbound-parse reply address for a transaction."""
    return f"{REPLY_TO_PREFIX}+{transaction_id}{REPLY_TO_DELIMITER}{environment_id}@{inbound_parse_domain}"


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def create_mail_data(options: EmailOptions, overrides: dict[str, Any]) -> EmailOptions:
    """Apply the merged override map to the base uniform message.

    Recipients from ``overrides["to"]`` are appended to the base ones and
    duplicates are dropped, keeping first-seen order.
    """
    to: list[str] = []
    for address in [*options.to, *_as_list(overrides.get("to"))]:
        if address not in to:
            to.append(address)

    data = options.model_dump()
    data.update(
        to=to,
        from_address=overrides.get("from") or options.from_address,
        text=overrides.get("text") or options.text,
        cc=_as_list(overrides.get("cc")),
        bcc=_as_list(overrides.get("bcc")),
        custom_data=overrides.get("customData") or {},
    )
    if overrides.get("ipPoolName"):
        data["ip_pool_name"] = overrides["ipPoolName"]
    return EmailOptions.model_validate(data)


def merge_overrides(overrides: dict[str, Any], provider_id: str) -> dict[str, Any]:
    """Merge channel-level and provider-level overrides; provider keys win."""
    return {**(overrides.get("email") or {}), **(overrides.get(provider_id) or {})}


class EmailChannel:
    """:class:`SendChannel` implementation for email."""

    channel = ChannelType.EMAIL

    def __init__(self, services: ChannelServices):
        self.services = services

    @property
    def store_content(self) -> bool:
        return self.services.config.retention.store_content

    async def execute(self, command: TriggerCommand, context: PipelineContext) -> None:
        services = self.services
        subscriber = await services.get_subscriber(command)

        email_overrides = command.overrides.get("email") or {}
        integration = await self._select_integration(command, context, email_overrides)
        if integration is None:
            return

        step = command.step
        if step is None:
            raise ChannelStepNotFound("Email channel step not found")
        if step.template is None:
            raise ChannelStepNotFound("Email channel template not found")
        template = step.template

        email = command.payload.get("email") or subscriber.email
        if not email:
            await self._send_errors(command, context, email, integration, None)
            return

        actor = await services.get_actor(command)
        tenant, layout_id, _ = await asyncio.gather(
            services.get_tenant(command),
            self._get_override_layout_id(command, context),
            self._record_selected_integration(command, context, integration),
        )

        overrides = merge_overrides(command.overrides, integration.provider_id)
        sender_name = overrides.get("senderName") or template.sender_name
        template_payload = self._build_template_payload(
            command, template, subscriber, tenant, actor, layout_id, sender_name
        )

        attachments = self._parse_attachments(command, context)
        message_payload = {k: v for k, v in command.payload.items() if k != "attachments"}
        message = await services.store.create_message(
            Message(
                id=uuid.uuid4().hex,
                organization_id=command.organization_id,
                environment_id=command.environment_id,
                notification_id=command.notification_id,
                subscriber_id=command.subscriber_id,
                template_id=command.template_id,
                message_template_id=template.id,
                job_id=command.job_id,
                transaction_id=command.transaction_id,
                template_identifier=command.identifier,
                channel=ChannelType.EMAIL,
                email=email,
                provider_id=integration.provider_id,
                subject="",
                payload=message_payload,
                overrides=overrides,
            )
        )

        reply_to_address = None
        if step.reply_callback is not None and step.reply_callback.active:
            reply_to_address = await self._get_reply_to(command, context, step, message.id)
            if reply_to_address:
                template_payload["payload"]["step"]["reply_to_address"] = reply_to_address

        try:
            compiled = await services.compiler.compile(
                command.environment_id, command.organization_id, command.user_id, template_payload
            )
        except CompilationFailed as exc:
            context.logger.error("Compiling the email template has failed: %s", exc)
            await self.send_error_template(command, context, message.id, exc.cause)
            return

        if self.store_content:
            await services.store.update_message_content(
                message.id, command.environment_id, compiled.subject, compiled.html_body
            )

        await services.record(
            command,
            context,
            DetailCode.MESSAGE_CREATED,
            ExecutionDetailStatus.PENDING,
            message_id=message.id,
            raw=template_payload if self.store_content else None,
        )

        mail_data = self._build_mail_data(
            command, subscriber, integration, message, email, compiled, overrides, reply_to_address, attachments
        )
        if email_overrides.get("replyTo"):
            mail_data.reply_to = email_overrides["replyTo"]
        if integration.provider_id == EmailProviderId.EMAIL_WEBHOOK.value:
            mail_data.payload_details = template_payload

        if email and integration:
            await self._send_message(command, context, integration, mail_data, message, compiled.sender_name)
            return
        await self._send_errors(command, context, email, integration, message.id)

    async def _select_integration(
        self, command: TriggerCommand, context: PipelineContext, email_overrides: dict[str, Any]
    ) -> Integration | None:
        identifier = email_overrides.get("integrationIdentifier")
        try:
            return await self.services.selector.select(
                command.organization_id,
                command.environment_id,
                ChannelType.EMAIL,
                tenant=command.tenant,
                identifier=identifier,
            )
        except ExplicitIntegrationNotFound as exc:
            context.logger.warning("%s", exc)
            await self.services.record(
                command,
                context,
                DetailCode.LIMIT_PASSED_INTEGRATION,
                ExecutionDetailStatus.FAILED,
                raw=exc.to_dict(),
            )
        except NoActiveIntegration as exc:
            context.logger.warning("%s", exc)
            await self.services.record(
                command,
                context,
                DetailCode.SUBSCRIBER_NO_ACTIVE_INTEGRATION,
                ExecutionDetailStatus.FAILED,
                raw=exc.to_dict(),
            )
        return None

    async def _get_override_layout_id(self, command: TriggerCommand, context: PipelineContext) -> str | None:
        layout_identifier = command.overrides.get("layoutIdentifier")
        if not layout_identifier:
            return None
        layout = await self.services.store.get_layout_by_identifier(command.environment_id, layout_identifier)
        if layout is None:
            context.logger.warning("Layout override %s not found", layout_identifier)
            await self.services.record(
                command,
                context,
                DetailCode.LAYOUT_NOT_FOUND,
                ExecutionDetailStatus.WARNING,
                raw={"layoutIdentifier": layout_identifier},
            )
            return None
        return layout.id

    async def _record_selected_integration(
        self, command: TriggerCommand, context: PipelineContext, integration: Integration
    ) -> None:
        self.services.metrics.inc_integration_selected(integration.provider_id)
        await self.services.record(
            command,
            context,
            DetailCode.INTEGRATION_INSTANCE_SELECTED,
            ExecutionDetailStatus.PENDING,
            raw={
                "providerId": integration.provider_id,
                "identifier": integration.identifier,
                "name": integration.name,
            },
        )

    @staticmethod
    def _build_template_payload(
        command: TriggerCommand,
        template: EmailTemplate,
        subscriber: Subscriber,
        tenant: Tenant | None,
        actor: Subscriber | None,
        layout_id: str | None,
        sender_name: str | None,
    ) -> dict[str, Any]:
        variables: dict[str, Any] = {
            **command.payload,
            "step": {
                "digest": bool(command.events),
                "events": command.events,
                "total_count": len(command.events),
            },
            "subscriber": subscriber.model_dump(),
        }
        if tenant is not None:
            variables["tenant"] = tenant.model_dump()
        if actor is not None:
            variables["actor"] = actor.model_dump()
        return {
            "senderName": sender_name or "",
            "subject": template.subject or "",
            "preheader": template.preheader,
            "content": template.content,
            "layoutId": layout_id or template.layout_id,
            "contentType": template.content_type or "editor",
            "payload": variables,
        }

    async def _get_reply_to(
        self, command: TriggerCommand, context: PipelineContext, step: NotificationStep, message_id: str
    ) -> str | None:
        if not step.reply_callback.url:
            await self.services.record(
                command,
                context,
                DetailCode.REPLY_CALLBACK_MISSING_CALLBACK_URL,
                ExecutionDetailStatus.WARNING,
                message_id=message_id,
            )
            return None

        environment = await self.services.store.get_environment(command.environment_id)
        if environment is None:
            raise EnvironmentNotFound(command.environment_id)

        mx_configured = bool(environment.dns and environment.dns.mx_record_configured)
        parse_domain = environment.dns.inbound_parse_domain if environment.dns else None
        if mx_configured and parse_domain:
            return derive_reply_to(command.transaction_id, environment.id, parse_domain)

        if not mx_configured and not parse_domain:
            detail = DetailCode.REPLY_CALLBACK_NOT_CONFIGURED
        elif not mx_configured:
            detail = DetailCode.REPLY_CALLBACK_MISSING_MX_RECORD_CONFIGURATION
        else:
            detail = DetailCode.REPLY_CALLBACK_MISSING_INBOUND_PARSE_DOMAIN
        await self.services.record(
            command, context, detail, ExecutionDetailStatus.WARNING, message_id=message_id
        )
        return None

    async def send_error_template(
        self, command: TriggerCommand, context: PipelineContext, message_id: str, reason: str
    ) -> None:
        """Record that the content could not be generated for ``message_id``."""
        context.logger.warning("Message %s content not generated: %s", message_id, reason)
        await self.services.record(
            command,
            context,
            DetailCode.MESSAGE_CONTENT_NOT_GENERATED,
            ExecutionDetailStatus.FAILED,
            message_id=message_id,
            raw={"reason": reason},
        )

    def _build_mail_data(
        self,
        command: TriggerCommand,
        subscriber: Subscriber,
        integration: Integration,
        message: Message,
        email: str,
        compiled: CompiledEmail,
        overrides: dict[str, Any],
        reply_to_address: str | None,
        attachments: list[EmailAttachment],
    ) -> EmailOptions:
        base = EmailOptions(
            id=message.id,
            to=[email],
            from_address=integration.credentials.get("from") or self.services.config.providers.default_from,
            subject=compiled.subject,
            html=compiled.html_body,
            text=compiled.plain_text or None,
            attachments=attachments,
            reply_to=reply_to_address,
            notification_details={
                "transactionId": command.transaction_id,
                "workflowIdentifier": command.identifier,
                "subscriberId": subscriber.subscriber_id,
            },
        )
        return create_mail_data(base, overrides)

    @staticmethod
    def _parse_attachments(command: TriggerCommand, context: PipelineContext) -> list[EmailAttachment]:
        """Validate payload attachments; malformed entries are dropped with a warning."""
        attachments: list[EmailAttachment] = []
        for index, raw in enumerate(command.payload.get("attachments") or []):
            try:
                attachments.append(EmailAttachment.model_validate(raw))
            except ValidationError as exc:
                context.logger.warning("Dropping malformed attachment #%d: %s", index, exc.errors())
        return attachments

    async def _send_message(
        self,
        command: TriggerCommand,
        context: PipelineContext,
        integration: Integration,
        mail_data: EmailOptions,
        message: Message,
        sender_name: str | None,
    ) -> None:
        credentials = dict(integration.credentials)
        if sender_name:
            credentials["senderName"] = sender_name
        try:
            handler = self.services.providers.get_handler(integration, credentials)
            result = await handler.send(mail_data)
        except UnknownProvider as exc:
            context.logger.error("Message %s cannot be sent: %s", message.id, exc)
            await self.services.record(
                command,
                context,
                DetailCode.PROVIDER_ERROR,
                ExecutionDetailStatus.FAILED,
                message_id=message.id,
                raw={**exc.to_dict(), "providerId": exc.provider_id},
            )
            return
        except ProviderDispatchFailed as exc:
            context.logger.error(
                "Error while sending message %s with provider %s: %s", message.id, exc.provider_id, exc
            )
            await self.services.record(
                command,
                context,
                DetailCode.PROVIDER_ERROR,
                ExecutionDetailStatus.FAILED,
                message_id=message.id,
                raw=exc.to_dict(),
            )
            return

        if self.services.config.log_delivery_activity:
            context.logger.info("Message %s sent via %s to %s", message.id, integration.provider_id, mail_data.to)
        self.services.metrics.inc_sent(integration.provider_id)
        await self.services.record(
            command,
            context,
            DetailCode.MESSAGE_SENT,
            ExecutionDetailStatus.SUCCESS,
            message_id=message.id,
            raw=result.model_dump(),
        )
        if result.provider_message_id:
            await self.services.store.set_message_identifier(
                message.id, command.environment_id, result.provider_message_id
            )

    async def _send_errors(
        self,
        command: TriggerCommand,
        context: PipelineContext,
        email: str | None,
        integration: Integration | None,
        message_id: str | None,
    ) -> None:
        if not email:
            context.logger.warning("Subscriber %s does not have an email address", command.subscriber_id)
            await self.services.record(
                command,
                context,
                DetailCode.SUBSCRIBER_NO_CHANNEL_DETAILS,
                ExecutionDetailStatus.FAILED,
                message_id=message_id,
            )
            return
        if integration is None:
            context.logger.warning("Subscriber %s has no active email integration", command.subscriber_id)
            await self.services.record(
                command,
                context,
                DetailCode.SUBSCRIBER_NO_ACTIVE_INTEGRATION,
                ExecutionDetailStatus.FAILED,
                message_id=message_id,
            )


__all__ = ["EmailChannel", "create_mail_data", "derive_reply_to", "merge_overrides"]
