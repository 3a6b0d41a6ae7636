import asyncio

import pytest

from conftest import make_command
from delivery_pipeline.config import WorkerConfig
from delivery_pipeline.errors import SubscriberNotFound
from delivery_pipeline.models import NotificationStep
from delivery_pipeline.prometheus import PipelineMetrics
from delivery_pipeline.queue import MemoryQueue
from delivery_pipeline.tracing import TRIGGER_ENGINE_GROUP, TRIGGER_HANDLER_TRANSACTION, Tracer
from delivery_pipeline.worker import WorkflowWorker


class DummyChannel:
    channel = "email"

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def execute(self, command, context):
        self.calls.append((command, context))
        if self.error is not None:
            raise self.error


def build(channel, max_attempts=1, concurrency=1):
    metrics = PipelineMetrics()
    spans = []
    config = WorkerConfig(concurrency=concurrency, max_attempts=max_attempts, retry_delays=(0.0,))
    queue = MemoryQueue(config, metrics=metrics)
    worker = WorkflowWorker(
        queue,
        {"email": channel},
        config=config,
        tracer=Tracer(metrics, on_close=spans.append),
        metrics=metrics,
    )
    return worker, queue, spans, metrics


@pytest.mark.asyncio
async def test_successful_job_completes_inside_one_span():
    channel = DummyChannel()
    worker, queue, spans, metrics = build(channel)
    job = await queue.add("workflow", make_command().model_dump())

    assert await worker.process_job(await queue.get("workflow")) is True

    assert await job.done == job.id
    command, context = channel.calls[0]
    assert command.transaction_id == "tx-1"
    assert context.job_id == job.id
    assert context.span is spans[0]
    assert len(spans) == 1
    assert spans[0].name == TRIGGER_HANDLER_TRANSACTION
    assert spans[0].group == TRIGGER_ENGINE_GROUP
    assert spans[0].outcome == "success"
    assert b'ndp_jobs_total{outcome="completed"} 1.0' in metrics.generate_latest()


@pytest.mark.asyncio
async def test_fatal_error_rejects_job_and_closes_span():
    worker, queue, spans, metrics = build(DummyChannel(SubscriberNotFound("sub-1")))
    job = await queue.add("workflow", make_command().model_dump())

    assert await worker.process_job(await queue.get("workflow")) is False

    with pytest.raises(SubscriberNotFound):
        await job.done
    assert [s.outcome for s in spans] == ["error"]
    assert b'ndp_jobs_total{outcome="rejected"} 1.0' in metrics.generate_latest()


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected():
    channel = DummyChannel()
    worker, queue, spans, _ = build(channel)
    job = await queue.add("workflow", {"job_id": "broken"})

    await worker.process_job(await queue.get("workflow"))

    assert job.done.done()
    assert job.done.exception() is not None
    assert channel.calls == []
    assert len(spans) == 1


@pytest.mark.asyncio
async def test_unregistered_channel_is_rejected():
    worker, queue, _, _ = build(DummyChannel())
    payload = make_command(step=NotificationStep(id="s", channel="sms")).model_dump()
    job = await queue.add("workflow", payload)

    await worker.process_job(await queue.get("workflow"))

    assert "sms" in str(job.done.exception())


@pytest.mark.asyncio
async def test_redelivery_marks_context_as_retry():
    channel = DummyChannel(RuntimeError("transient"))
    worker, queue, _, _ = build(channel, max_attempts=2)
    await queue.add("workflow", make_command().model_dump())

    await worker.process_job(await queue.get("workflow"))
    await worker.process_job(await asyncio.wait_for(queue.get("workflow"), timeout=1))

    assert [ctx.is_retry for _, ctx in channel.calls] == [False, True]


@pytest.mark.asyncio
async def test_consumer_pool_processes_jobs_until_stopped():
    channel = DummyChannel()
    worker, queue, _, _ = build(channel, concurrency=2)
    await worker.start()
    jobs = await queue.add_bulk("workflow", [make_command(job_id=f"j{i}").model_dump() for i in range(4)])

    await asyncio.wait_for(asyncio.gather(*(job.done for job in jobs)), timeout=2)
    await worker.stop()

    assert not worker.running
    assert sorted(c.job_id for c, _ in channel.calls) == ["j0", "j1", "j2", "j3"]
