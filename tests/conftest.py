from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from delivery_pipeline.channels import ChannelServices, EmailChannel
from delivery_pipeline.config import PipelineConfig
from delivery_pipeline.errors import ProviderDispatchFailed
from delivery_pipeline.execution_log import ExecutionLogWriter
from delivery_pipeline.models import (
    EmailTemplate,
    Environment,
    EnvironmentDns,
    Integration,
    NotificationStep,
    ReplyCallback,
    SendResult,
    Subscriber,
    TriggerCommand,
)
from delivery_pipeline.persistence import Persistence
from delivery_pipeline.prometheus import PipelineMetrics
from delivery_pipeline.providers import EmailHandler, EmailProviderId, ProviderRegistry

ORG = "org-1"
ENV = "env-1"


class DummyHandler(EmailHandler):
    """Records every send; behaviour is driven by class attributes."""

    provider_id = EmailProviderId.SMTP
    sent: list[Any] = []
    instances: list["DummyHandler"] = []
    result = SendResult(provider_message_id="prov-123", raw={"accepted": True})
    error: Exception | None = None

    def __init__(self, credentials, from_address, **kwargs):
        super().__init__(credentials, from_address, timeout=kwargs.get("timeout", 5.0))
        DummyHandler.instances.append(self)

    async def _send(self, options):
        DummyHandler.sent.append(options)
        if DummyHandler.error is not None:
            raise DummyHandler.error
        return DummyHandler.result


@pytest.fixture(autouse=True)
def reset_dummy_handler():
    DummyHandler.sent = []
    DummyHandler.instances = []
    DummyHandler.result = SendResult(provider_message_id="prov-123", raw={"accepted": True})
    DummyHandler.error = None
    yield


@pytest_asyncio.fixture
async def store(tmp_path):
    persistence = Persistence(str(tmp_path / "pipeline.db"))
    await persistence.init_db()
    return persistence


@pytest.fixture
def config():
    return PipelineConfig(db_path=":unused:")


@pytest.fixture
def services(store, config):
    metrics = PipelineMetrics()
    registry = ProviderRegistry(
        config.providers,
        handlers={"smtp": DummyHandler, "email-webhook": DummyHandler},
    )
    return ChannelServices(
        store=store,
        execution_log=ExecutionLogWriter(store, metrics=metrics),
        config=config,
        metrics=metrics,
        providers=registry,
    )


@pytest.fixture
def channel(services):
    return EmailChannel(services)


def make_integration(**overrides: Any) -> Integration:
    data = {
        "id": "int-1",
        "identifier": "main-smtp",
        "name": "Main SMTP",
        "organization_id": ORG,
        "environment_id": ENV,
        "provider_id": "smtp",
        "credentials": {"from": "sender@example.com", "host": "smtp.example.com"},
        "created_at": 100,
    }
    data.update(overrides)
    return Integration(**data)


def make_subscriber(**overrides: Any) -> Subscriber:
    data = {
        "id": "sub-internal-1",
        "subscriber_id": "sub-1",
        "environment_id": ENV,
        "email": "user@example.com",
        "first_name": "Ada",
    }
    data.update(overrides)
    return Subscriber(**data)


def make_step(**overrides: Any) -> NotificationStep:
    data = {
        "id": "step-1",
        "template": EmailTemplate(
            id="tmpl-1",
            subject="Hello {{subscriber.first_name}}",
            content="<p>Order {{order}} is ready</p>",
            sender_name="Shop",
        ),
    }
    data.update(overrides)
    return NotificationStep(**data)


def make_command(**overrides: Any) -> TriggerCommand:
    data = {
        "identifier": "order-ready",
        "transaction_id": "tx-1",
        "organization_id": ORG,
        "environment_id": ENV,
        "user_id": "user-1",
        "subscriber_id": "sub-1",
        "notification_id": "notif-1",
        "template_id": "wf-1",
        "job_id": "job-1",
        "step": make_step(),
        "payload": {"order": "A-42"},
    }
    data.update(overrides)
    return TriggerCommand(**data)


def make_environment(mx: bool = True, domain: str | None = "reply.example.com") -> Environment:
    return Environment(
        id=ENV,
        organization_id=ORG,
        dns=EnvironmentDns(mx_record_configured=mx, inbound_parse_domain=domain),
    )


def reply_step(url: str | None = "https://hooks.example.com/reply") -> NotificationStep:
    return make_step(reply_callback=ReplyCallback(active=True, url=url))


def provider_failure(message: str = "mailbox unavailable") -> ProviderDispatchFailed:
    return ProviderDispatchFailed("smtp", message, temporary=False, provider_code=550)
