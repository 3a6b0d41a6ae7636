# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the delivery pipeline.

Errors fall in two tiers:

- Fatal errors signal a malformed request or a defect. They propagate out
  of the channel pipeline and reject the queue job.
- Recorded errors are expected operational outcomes. The orchestrator
  catches them, writes one audit entry and returns normally.

Every error exposes a stable ``code`` used in logs and audit payloads.
"""

from __future__ import annotations

from typing import Any


class PipelineError(RuntimeError):
    """Base class for all pipeline errors."""

    code = "pipeline_error"
    fatal = True

    def __init__(self, message: str):
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


# Fatal --------------------------------------------------------------------


class SubscriberNotFound(PipelineError):
    """Raised when the subscriber referenced by a job does not exist."""

    code = "subscriber_not_found"

    def __init__(self, subscriber_id: str):
        super().__init__(f"Subscriber {subscriber_id} not found")
        self.subscriber_id = subscriber_id


class ChannelStepNotFound(PipelineError):
    """Raised when the workflow step or its template is missing."""

    code = "channel_step_not_found"


class EnvironmentNotFound(PipelineError):
    """Raised when the environment record needed for reply-to is missing."""

    code = "environment_not_found"

    def __init__(self, environment_id: str):
        super().__init__(f"Environment {environment_id} is not found")
        self.environment_id = environment_id


class UnsupportedChannel(PipelineError):
    """Raised when a job targets a channel with no registered sender."""

    code = "unsupported_channel"


class UnknownProvider(PipelineError):
    """Raised when an integration names a provider with no handler."""

    code = "unknown_provider"

    def __init__(self, provider_id: str):
        super().__init__(f"No handler registered for provider '{provider_id}'")
        self.provider_id = provider_id


# Recorded -----------------------------------------------------------------


class RecordedError(PipelineError):
    """Base class for errors that are logged to the audit trail, not raised."""

    fatal = False


class NoActiveIntegration(RecordedError):
    """No active integration remains for the requested scope."""

    code = "no_active_integration"

    def __init__(self, channel: str, environment_id: str):
        super().__init__(f"No active {channel} integration found for environment {environment_id}")
        self.channel = channel
        self.environment_id = environment_id


class ExplicitIntegrationNotFound(RecordedError):
    """An explicitly requested integration identifier does not exist."""

    code = "explicit_integration_not_found"

    def __init__(self, identifier: str):
        super().__init__(f"Integration '{identifier}' not found")
        self.identifier = identifier

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["integrationIdentifier"] = self.identifier
        return data


class CompilationFailed(RecordedError):
    """Template compilation failed; carries the underlying cause message."""

    code = "compilation_failed"

    def __init__(self, cause: str):
        super().__init__(cause)
        self.cause = cause


class ProviderDispatchFailed(RecordedError):
    """Normalised provider error raised by every provider handler.

    Attributes:
        provider_id: Provider that failed.
        temporary: Whether the underlying failure looks transient. Kept for
            diagnostics; the pipeline does not retry on it.
        provider_code: Provider status code (SMTP or HTTP) when available.
    """

    code = "provider_dispatch_failed"

    def __init__(
        self,
        provider_id: str,
        message: str,
        *,
        temporary: bool = False,
        provider_code: int | None = None,
    ):
        super().__init__(message)
        self.provider_id = provider_id
        self.temporary = temporary
        self.provider_code = provider_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "providerId": self.provider_id,
                "temporary": self.temporary,
                "providerCode": self.provider_code,
            }
        )
        return data


__all__ = [
    "ChannelStepNotFound",
    "CompilationFailed",
    "EnvironmentNotFound",
    "ExplicitIntegrationNotFound",
    "NoActiveIntegration",
    "PipelineError",
    "ProviderDispatchFailed",
    "RecordedError",
    "SubscriberNotFound",
    "UnknownProvider",
    "UnsupportedChannel",
]
