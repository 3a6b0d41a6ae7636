# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed provider-id to handler table for the email channel."""

from __future__ import annotations

from typing import Any

from ..config import ProviderConfig
from ..errors import UnknownProvider
from ..models import Integration
from ..smtp_pool import SMTPPool
from .base import EmailHandler, EmailProviderId
from .smtp import SMTPHandler
from .webhook import EmailWebhookHandler

EMAIL_HANDLERS: dict[EmailProviderId, type[EmailHandler]] = {
    EmailProviderId.SMTP: SMTPHandler,
    EmailProviderId.EMAIL_WEBHOOK: EmailWebhookHandler,
}


class ProviderRegistry:
    """Builds a configured handler for a selected integration.

    The table is fixed at construction. Tests pass their own ``handlers``
    mapping keyed by provider id string.
    """

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        handlers: dict[str, type[EmailHandler]] | None = None,
        smtp_pool: SMTPPool | None = None,
    ):
        self.config = config or ProviderConfig()
        if handlers is None:
            handlers = {provider.value: cls for provider, cls in EMAIL_HANDLERS.items()}
        self.handlers = dict(handlers)
        self.smtp_pool = smtp_pool or SMTPPool(ttl=self.config.smtp_pool_ttl)

    def supports(self, provider_id: str) -> bool:
        return provider_id in self.handlers

    def get_handler(self, integration: Integration, credentials: dict[str, Any] | None = None) -> EmailHandler:
        """Return a handler instance for ``integration``.

        Args:
            integration: The selected integration.
            credentials: Credentials to use instead of the stored ones
                (the caller injects the resolved ``senderName``).

        Raises:
            UnknownProvider: No handler is registered for the provider id.
        """
        handler_cls = self.handlers.get(integration.provider_id)
        if handler_cls is None:
            raise UnknownProvider(integration.provider_id)
        creds = dict(integration.credentials if credentials is None else credentials)
        from_address = creds.get("from") or self.config.default_from
        kwargs: dict[str, Any] = {"timeout": self.config.dispatch_timeout}
        if issubclass(handler_cls, SMTPHandler):
            kwargs["pool"] = self.smtp_pool
        return handler_cls(creds, from_address, **kwargs)

    async def close(self) -> None:
        await self.smtp_pool.close_all()


__all__ = ["EMAIL_HANDLERS", "ProviderRegistry"]
