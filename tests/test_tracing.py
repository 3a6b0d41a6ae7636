import logging

import pytest

from delivery_pipeline.context import PipelineContext
from delivery_pipeline.prometheus import PipelineMetrics
from delivery_pipeline.tracing import Span, Tracer, traced


@pytest.mark.asyncio
async def test_span_closes_once_on_success():
    closed = []
    tracer = Tracer(on_close=closed.append)
    async with tracer.span("unit", "Group", job_id="j1") as span:
        assert not span.closed
    assert closed == [span]
    assert span.outcome == "success"
    assert span.attributes == {"job_id": "j1"}


@pytest.mark.asyncio
async def test_span_closes_once_on_error():
    closed = []
    tracer = Tracer(on_close=closed.append)
    with pytest.raises(ValueError):
        async with tracer.span("unit"):
            raise ValueError("bad")
    assert len(closed) == 1
    assert closed[0].outcome == "error"
    assert closed[0].duration >= 0


def test_span_end_is_idempotent():
    span = Span(name="x", group="g")
    span.end("success")
    ended_at = span.ended_at
    span.end("error")
    assert span.outcome == "success"
    assert span.ended_at == ended_at


@pytest.mark.asyncio
async def test_traced_wraps_call_and_reports_histogram():
    metrics = PipelineMetrics()
    tracer = Tracer(metrics)

    async def add(a, b):
        return a + b

    assert await traced(tracer, "adder", add, 2, b=3) == 5
    assert b'ndp_job_duration_seconds_count{name="adder"} 1.0' in metrics.generate_latest()


def test_context_logger_prefixes_job_identity(caplog):
    context = PipelineContext(job_id="j1", transaction_id="tx-9")
    with caplog.at_level(logging.INFO, logger="DeliveryPipeline"):
        context.logger.info("hello")
    assert "[job=j1 txn=tx-9] hello" in caplog.text
    assert caplog.records[0].job_id == "j1"


def test_context_retry_flag():
    assert PipelineContext.detached().is_retry is False
    assert PipelineContext(job_id="j", attempt=2).is_retry is True
