import asyncio
import base64
import json
from contextlib import asynccontextmanager

import aiosmtplib
import pytest

from conftest import make_integration
from delivery_pipeline.config import ProviderConfig
from delivery_pipeline.errors import ProviderDispatchFailed, UnknownProvider
from delivery_pipeline.models import EmailOptions
from delivery_pipeline.providers import (
    EMAIL_HANDLERS,
    EmailProviderId,
    EmailWebhookHandler,
    ProviderRegistry,
    SMTPHandler,
    classify_smtp_error,
)
from delivery_pipeline.providers import webhook as webhook_module
from delivery_pipeline.providers.webhook import SIGNATURE_HEADER, sign_body


def options(**kwargs):
    data = {
        "id": "msg-1",
        "to": ["a@example.com"],
        "from": "sender@example.com",
        "subject": "Hello",
        "html": "<p>Hello</p>",
        "text": "Hello",
    }
    data.update(kwargs)
    return EmailOptions.model_validate(data)


class DummySMTP:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send_message(self, msg, sender=None, recipients=None):
        if self.error is not None:
            raise self.error
        self.sent.append((msg, sender, recipients))
        return {}, "250 OK queued"


class DummyPool:
    def __init__(self, smtp):
        self.smtp = smtp
        self.endpoints = []

    @asynccontextmanager
    async def connection(self, endpoint):
        self.endpoints.append(endpoint)
        yield self.smtp

    async def close_all(self):
        pass


def test_registry_table_covers_every_provider_id():
    assert set(EMAIL_HANDLERS) == set(EmailProviderId)


def test_registry_builds_configured_handlers():
    registry = ProviderRegistry(ProviderConfig(default_from="fallback@example.com", dispatch_timeout=7))
    smtp = registry.get_handler(make_integration(credentials={}))
    assert isinstance(smtp, SMTPHandler)
    assert smtp.from_address == "fallback@example.com"
    assert smtp.timeout == 7
    assert smtp.pool is registry.smtp_pool

    webhook = registry.get_handler(
        make_integration(provider_id="email-webhook", credentials={"from": "x@example.com"}),
        {"from": "x@example.com", "senderName": "Shop"},
    )
    assert isinstance(webhook, EmailWebhookHandler)
    assert webhook.from_address == "x@example.com"
    assert webhook.sender_name == "Shop"


def test_registry_rejects_unknown_provider():
    with pytest.raises(UnknownProvider):
        ProviderRegistry().get_handler(make_integration(provider_id="carrier-pigeon"))


@pytest.mark.parametrize(
    "exc, temporary, code",
    [
        (aiosmtplib.SMTPResponseException(451, "try later"), True, 451),
        (aiosmtplib.SMTPResponseException(550, "no such user"), False, 550),
        (asyncio.TimeoutError(), True, None),
        (RuntimeError("certificate verify failed"), False, None),
        (RuntimeError("something odd"), True, None),
    ],
)
def test_classify_smtp_error(exc, temporary, code):
    assert classify_smtp_error(exc) == (temporary, code)


def test_smtp_message_headers_and_attachments():
    handler = SMTPHandler({"senderName": "Shop"}, "sender@example.com", pool=DummyPool(DummySMTP()))
    attachment = {"file": base64.b64encode(b"data").decode(), "name": "report.csv", "mime": "text/csv"}
    msg = handler.build_message(
        options(cc=["c@example.com"], reply_to="r@example.com", attachments=[attachment], custom_data={"k": "v"})
    )
    assert msg["From"] == "Shop <sender@example.com>"
    assert msg["Cc"] == "c@example.com"
    assert msg["Reply-To"] == "r@example.com"
    assert msg["X-Custom-k"] == "v"
    assert msg["Message-ID"].endswith("@example.com>")
    names = [part.get_filename() for part in msg.iter_attachments()]
    assert names == ["report.csv"]


@pytest.mark.asyncio
async def test_smtp_send_uses_pool_and_all_recipients():
    smtp = DummySMTP()
    pool = DummyPool(smtp)
    handler = SMTPHandler({"host": "mx.local", "port": 465}, "sender@example.com", pool=pool)

    result = await handler.send(options(cc=["c@example.com"], bcc=["b@example.com"]))

    assert pool.endpoints[0].use_tls is True
    assert pool.endpoints[0].host == "mx.local"
    _, sender, recipients = smtp.sent[0]
    assert sender == "sender@example.com"
    assert recipients == ["a@example.com", "c@example.com", "b@example.com"]
    assert result.provider_message_id.startswith("<")
    assert result.raw["response"] == "250 OK queued"


@pytest.mark.asyncio
async def test_smtp_errors_are_normalised():
    handler = SMTPHandler(
        {}, "sender@example.com", pool=DummyPool(DummySMTP(aiosmtplib.SMTPResponseException(550, "rejected")))
    )
    with pytest.raises(ProviderDispatchFailed) as exc:
        await handler.send(options())
    assert exc.value.provider_id == "smtp"
    assert exc.value.provider_code == 550
    assert exc.value.temporary is False


@pytest.mark.asyncio
async def test_invalid_attachment_is_normalised():
    handler = SMTPHandler({}, "sender@example.com", pool=DummyPool(DummySMTP()))
    with pytest.raises(ProviderDispatchFailed):
        await handler.send(options(attachments=[{"file": "***", "name": "x.bin"}]))


@pytest.mark.asyncio
async def test_slow_provider_times_out():
    class SlowSMTP(DummySMTP):
        async def send_message(self, msg, sender=None, recipients=None):
            await asyncio.sleep(1)

    handler = SMTPHandler({}, "sender@example.com", timeout=0.01, pool=DummyPool(SlowSMTP()))
    with pytest.raises(ProviderDispatchFailed) as exc:
        await handler.send(options())
    assert exc.value.temporary is True


class DummyResponse:
    def __init__(self, status, body):
        self.status = status
        self.body = body

    async def text(self):
        return self.body

    async def json(self, content_type=None):
        return json.loads(self.body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummySession:
    calls = []
    response = DummyResponse(200, '{"id": "hook-1"}')

    def __init__(self, *args, **kwargs):
        pass

    def post(self, url, data=None, headers=None):
        DummySession.calls.append((url, data, headers))
        return DummySession.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def dummy_session(monkeypatch):
    DummySession.calls = []
    DummySession.response = DummyResponse(200, '{"id": "hook-1"}')
    monkeypatch.setattr(webhook_module.aiohttp, "ClientSession", DummySession)
    return DummySession


@pytest.mark.asyncio
async def test_webhook_posts_signed_json(dummy_session):
    handler = EmailWebhookHandler(
        {"webhookUrl": "https://hooks.example.com/mail", "secretKey": "s3cret", "senderName": "Shop"},
        "sender@example.com",
    )

    result = await handler.send(
        options(
            payload_details={"payload": {"a": 1}},
            reply_to="reply@example.com",
            ip_pool_name="pool-a",
            custom_data={"campaign": "spring"},
        )
    )

    url, body, headers = dummy_session.calls[0]
    assert url == "https://hooks.example.com/mail"
    sent = json.loads(body)
    assert sent["from"] == "sender@example.com"
    assert sent["senderName"] == "Shop"
    assert sent["payloadDetails"] == {"payload": {"a": 1}}
    assert sent["replyTo"] == "reply@example.com"
    assert sent["ipPoolName"] == "pool-a"
    assert sent["customData"] == {"campaign": "spring"}
    assert "reply_to" not in sent
    assert "custom_data" not in sent
    assert headers[SIGNATURE_HEADER] == sign_body("s3cret", body)
    assert result.provider_message_id == "hook-1"


@pytest.mark.asyncio
async def test_webhook_http_error_is_normalised(dummy_session):
    dummy_session.response = DummyResponse(503, "unavailable")
    handler = EmailWebhookHandler({"webhookUrl": "https://hooks.example.com/mail"}, "sender@example.com")

    with pytest.raises(ProviderDispatchFailed) as exc:
        await handler.send(options())

    assert exc.value.provider_code == 503
    assert exc.value.temporary is True
    assert SIGNATURE_HEADER not in dummy_session.calls[0][2]


@pytest.mark.asyncio
async def test_webhook_without_url_fails(dummy_session):
    handler = EmailWebhookHandler({}, "sender@example.com")
    with pytest.raises(ProviderDispatchFailed):
        await handler.send(options())
    assert dummy_session.calls == []
