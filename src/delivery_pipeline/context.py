# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Request-scoped context threaded through every pipeline call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .logger import get_logger
from .tracing import Span


class _ContextAdapter(logging.LoggerAdapter):
    """Prefixes records with the job identity carried in ``extra``."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        job = self.extra.get("job_id") or "-"
        txn = self.extra.get("transaction_id") or "-"
        kwargs.setdefault("extra", {}).update(self.extra)
        return f"[job={job} txn={txn}] {msg}", kwargs


@dataclass
class PipelineContext:
    """Explicit context for one job run.

    Attributes:
        job_id: Queue job identifier.
        transaction_id: Trigger transaction identifier, when known.
        logger: Logger adapter bound to the identifiers above.
        span: Trace span of the unit of work, if one is open.
        attempt: Transport-level delivery attempt (1-based).
    """

    job_id: str
    transaction_id: str | None = None
    logger: logging.LoggerAdapter = field(default=None)  # type: ignore[assignment]
    span: Span | None = None
    attempt: int = 1

    def __post_init__(self) -> None:
        if self.logger is None:
            self.logger = _ContextAdapter(
                get_logger("DeliveryPipeline"),
                {"job_id": self.job_id, "transaction_id": self.transaction_id},
            )

    @classmethod
    def detached(cls, job_id: str = "-", transaction_id: str | None = None) -> PipelineContext:
        """Context for calls made outside the worker, e.g. tests or the CLI."""
        return cls(job_id=job_id, transaction_id=transaction_id)

    @property
    def is_retry(self) -> bool:
        return self.attempt > 1


__all__ = ["PipelineContext"]
