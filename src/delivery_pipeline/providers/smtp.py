# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP provider handler built on aiosmtplib.

Credentials used: ``host``, ``port``, ``user``, ``password``, ``secure``
(TLS; defaults to True on port 465), ``from`` and ``senderName``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import mimetypes
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

import aiosmtplib

from ..errors import ProviderDispatchFailed
from ..models import EmailAttachment, EmailOptions, SendResult
from ..smtp_pool import SMTPEndpoint, SMTPPool
from .base import EmailHandler, EmailProviderId

_TEMPORARY_PATTERNS = (
    "421",
    "450",
    "451",
    "452",
    "timeout",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)
_PERMANENT_PATTERNS = (
    "wrong_version_number",
    "certificate verify failed",
    "ssl handshake",
    "authentication failed",
    "535",
    "534",
    "530",
)


def classify_smtp_error(exc: Exception) -> tuple[bool, int | None]:
    """Classify an SMTP error as temporary or permanent.

    Returns:
        ``(is_temporary, smtp_code)``; unknown errors count as temporary.
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None)

    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError)):
        return True, smtp_code

    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in _TEMPORARY_PATTERNS):
        return True, smtp_code
    if any(pattern in error_msg for pattern in _PERMANENT_PATTERNS):
        return False, smtp_code
    return True, smtp_code


def _decode_attachment(attachment: EmailAttachment) -> tuple[bytes, str, str]:
    try:
        content = base64.b64decode(attachment.file, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Attachment {attachment.name} is not valid base64") from exc
    mime = attachment.mime or mimetypes.guess_type(attachment.name)[0] or "application/octet-stream"
    maintype, _, subtype = mime.partition("/")
    return content, maintype, subtype or "octet-stream"


class SMTPHandler(EmailHandler):
    provider_id = EmailProviderId.SMTP

    def __init__(
        self,
        credentials: dict[str, Any],
        from_address: str,
        *,
        timeout: float = 30.0,
        pool: SMTPPool | None = None,
    ):
        super().__init__(credentials, from_address, timeout=timeout)
        self.pool = pool or SMTPPool()

    @property
    def endpoint(self) -> SMTPEndpoint:
        port = int(self.credentials.get("port") or 587)
        secure = self.credentials.get("secure")
        return SMTPEndpoint(
            host=self.credentials.get("host") or "localhost",
            port=port,
            user=self.credentials.get("user"),
            password=self.credentials.get("password"),
            use_tls=port == 465 if secure is None else bool(secure),
        )

    def build_message(self, options: EmailOptions) -> EmailMessage:
        """Build the MIME message for ``options``."""
        msg = EmailMessage()
        msg["From"] = formataddr((self.sender_name or "", options.from_address))
        msg["To"] = ", ".join(options.to)
        msg["Subject"] = options.subject
        if options.cc:
            msg["Cc"] = ", ".join(options.cc)
        if options.reply_to:
            msg["Reply-To"] = options.reply_to
        domain = options.from_address.rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(idstring=options.id, domain=domain)
        for key, value in options.custom_data.items():
            if value is not None:
                msg[f"X-Custom-{key}"] = str(value)

        msg.set_content(options.text or "")
        if options.html:
            msg.add_alternative(options.html, subtype="html")
        for attachment in options.attachments:
            content, maintype, subtype = _decode_attachment(attachment)
            msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=attachment.name)
        return msg

    async def _send(self, options: EmailOptions) -> SendResult:
        msg = self.build_message(options)
        recipients = [*options.to, *options.cc, *options.bcc]
        async with self.pool.connection(self.endpoint) as smtp:
            errors, response = await smtp.send_message(
                msg, sender=options.from_address, recipients=recipients
            )
        return SendResult(
            provider_message_id=str(msg["Message-ID"]),
            raw={"response": response, "refused": {k: str(v) for k, v in (errors or {}).items()}},
        )

    def normalise_error(self, exc: Exception) -> ProviderDispatchFailed:
        temporary, smtp_code = classify_smtp_error(exc)
        message = f"{exc} (SMTP {smtp_code})" if smtp_code else str(exc) or exc.__class__.__name__
        return ProviderDispatchFailed(
            self.provider_id.value, message, temporary=temporary, provider_code=smtp_code
        )


__all__ = ["SMTPHandler", "classify_smtp_error"]
