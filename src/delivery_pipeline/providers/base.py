# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Provider handler contract.

Every handler turns the uniform :class:`EmailOptions` into one provider
call and returns a :class:`SendResult`. Any failure raised by the provider
library is converted to :class:`ProviderDispatchFailed` at this boundary.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, ClassVar

from ..errors import ProviderDispatchFailed
from ..models import EmailOptions, SendResult


class EmailProviderId(str, Enum):
    SMTP = "smtp"
    EMAIL_WEBHOOK = "email-webhook"


class EmailHandler(ABC):
    """Base class for email provider handlers.

    Attributes:
        credentials: Integration credentials (``senderName`` already resolved).
        from_address: Sender address for the message envelope.
        timeout: Upper bound in seconds for a single provider call.
    """

    provider_id: ClassVar[EmailProviderId]

    def __init__(self, credentials: dict[str, Any], from_address: str, *, timeout: float = 30.0):
        self.credentials = dict(credentials)
        self.from_address = from_address
        self.timeout = timeout

    @property
    def sender_name(self) -> str | None:
        return self.credentials.get("senderName") or None

    async def send(self, options: EmailOptions) -> SendResult:
        try:
            return await asyncio.wait_for(self._send(options), timeout=self.timeout)
        except ProviderDispatchFailed:
            raise
        except asyncio.TimeoutError as exc:
            raise ProviderDispatchFailed(
                self.provider_id.value,
                f"Provider call timed out after {self.timeout:.0f}s",
                temporary=True,
            ) from exc
        except Exception as exc:
            raise self.normalise_error(exc) from exc

    @abstractmethod
    async def _send(self, options: EmailOptions) -> SendResult:
        """Perform the provider call."""

    def normalise_error(self, exc: Exception) -> ProviderDispatchFailed:
        return ProviderDispatchFailed(
            self.provider_id.value,
            str(exc) or exc.__class__.__name__,
            temporary=isinstance(exc, (ConnectionError, OSError)),
        )


__all__ = ["EmailHandler", "EmailProviderId"]
