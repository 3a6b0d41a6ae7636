# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email-webhook provider handler.

Instead of talking to a mail server, the message is POSTed as JSON to a
customer endpoint (``credentials["webhookUrl"]``). When a ``secretKey`` is
configured the body is signed with HMAC-SHA256 and the hex digest is sent
in the ``X-Delivery-Signature`` header. The endpoint may answer with a JSON
object carrying an ``id``, which becomes the provider message id.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import aiohttp

from ..errors import ProviderDispatchFailed
from ..models import EmailOptions, SendResult
from .base import EmailHandler, EmailProviderId

SIGNATURE_HEADER = "X-Delivery-Signature"


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class EmailWebhookHandler(EmailHandler):
    provider_id = EmailProviderId.EMAIL_WEBHOOK

    @property
    def url(self) -> str:
        url = self.credentials.get("webhookUrl")
        if not url:
            raise ProviderDispatchFailed(self.provider_id.value, "Integration has no webhookUrl configured")
        return url

    def build_body(self, options: EmailOptions) -> dict[str, Any]:
        body = options.model_dump(by_alias=True, exclude_none=True)
        if self.sender_name:
            body["senderName"] = self.sender_name
        return body

    async def _send(self, options: EmailOptions) -> SendResult:
        url = self.url
        payload = json.dumps(self.build_body(options), default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        secret = self.credentials.get("secretKey")
        if secret:
            headers[SIGNATURE_HEADER] = sign_body(secret, payload)

        async with aiohttp.ClientSession() as session:
            async with session.post(url, data=payload, headers=headers) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise ProviderDispatchFailed(
                        self.provider_id.value,
                        f"Webhook responded with HTTP {resp.status}: {text[:200]}",
                        temporary=resp.status >= 500 or resp.status == 429,
                        provider_code=resp.status,
                    )
                try:
                    data = await resp.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    data = None

        if not isinstance(data, dict):
            data = {}
        message_id = data.get("id")
        return SendResult(
            provider_message_id=str(message_id) if message_id is not None else None,
            raw={"status": "delivered", **data},
        )

    def normalise_error(self, exc: Exception) -> ProviderDispatchFailed:
        temporary = isinstance(exc, (aiohttp.ClientConnectionError, ConnectionError, OSError))
        status = getattr(exc, "status", None)
        return ProviderDispatchFailed(
            self.provider_id.value,
            str(exc) or exc.__class__.__name__,
            temporary=temporary,
            provider_code=status if isinstance(status, int) else None,
        )


__all__ = ["SIGNATURE_HEADER", "EmailWebhookHandler", "sign_body"]
