# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the delivery pipeline.

All metrics use the ``ndp_`` prefix (notification delivery pipeline).

Metrics exposed:
    - ``ndp_jobs_total``: Counter of processed jobs per outcome.
    - ``ndp_job_duration_seconds``: Histogram of traced unit-of-work durations.
    - ``ndp_messages_sent_total``: Counter of successful dispatches per provider.
    - ``ndp_execution_details_total``: Counter of audit entries per code/status.
    - ``ndp_integration_selected_total``: Counter of integration selections.
    - ``ndp_queue_depth``: Gauge of jobs waiting in the in-process queue.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class PipelineMetrics:
    """Prometheus metrics collector for the delivery pipeline.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A fresh registry
                is created when omitted, so several instances can coexist
                in tests.
        """
        self.registry = registry or CollectorRegistry()
        self.jobs = Counter(
            "ndp_jobs_total",
            "Total processed jobs",
            ["outcome"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            "ndp_job_duration_seconds",
            "Duration of traced units of work",
            ["name"],
            registry=self.registry,
        )
        self.sent = Counter(
            "ndp_messages_sent_total",
            "Total messages accepted by a provider",
            ["provider_id"],
            registry=self.registry,
        )
        self.execution_details = Counter(
            "ndp_execution_details_total",
            "Total audit entries written",
            ["detail", "status"],
            registry=self.registry,
        )
        self.integration_selected = Counter(
            "ndp_integration_selected_total",
            "Total integration selections",
            ["provider_id"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "ndp_queue_depth",
            "Jobs waiting in the queue",
            registry=self.registry,
        )

    def inc_job(self, outcome: str) -> None:
        self.jobs.labels(outcome=outcome or "unknown").inc()

    def observe_span(self, name: str, seconds: float) -> None:
        self.job_duration.labels(name=name).observe(max(0.0, seconds))

    def inc_sent(self, provider_id: str | None) -> None:
        self.sent.labels(provider_id=provider_id or "unknown").inc()

    def inc_execution_detail(self, detail: str, status: str) -> None:
        self.execution_details.labels(detail=detail, status=status).inc()

    def inc_integration_selected(self, provider_id: str | None) -> None:
        self.integration_selected.labels(provider_id=provider_id or "unknown").inc()

    def set_queue_depth(self, value: int) -> None:
        self.queue_depth.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
