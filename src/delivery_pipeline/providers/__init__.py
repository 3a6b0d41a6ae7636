# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email provider handlers and their registry."""

from .base import EmailHandler, EmailProviderId
from .registry import EMAIL_HANDLERS, ProviderRegistry
from .smtp import SMTPHandler, classify_smtp_error
from .webhook import EmailWebhookHandler

__all__ = [
    "EMAIL_HANDLERS",
    "EmailHandler",
    "EmailProviderId",
    "EmailWebhookHandler",
    "ProviderRegistry",
    "SMTPHandler",
    "classify_smtp_error",
]
