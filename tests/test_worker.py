import asyncio
import os
import signal
import sys

import pytest

from invoice_pipeline.queues.invoice_queues import InvoiceQueues, graceful_shutdown, install_shutdown_handler
from invoice_pipeline.queues.job_queue import Job, JobOptions, JobQueue
from invoice_pipeline.workers.worker import RateLimiter, Worker


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_sliding_window() -> None:
    clock = FakeMonotonic()
    limiter = RateLimiter(2, 1000, clock=clock)

    assert limiter.acquire()
    assert limiter.acquire()
    assert not limiter.acquire()
    assert limiter.wait_time() == pytest.approx(1.0)

    clock.now = 100.4
    assert limiter.wait_time() == pytest.approx(0.6)
    clock.now = 101.0
    assert limiter.wait_time() == 0.0
    assert limiter.acquire()


def test_rate_limiter_rejects_invalid_settings() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0, 1000)
    with pytest.raises(ValueError):
        RateLimiter(1, 0)


def test_worker_rejects_invalid_configuration(queues: InvoiceQueues) -> None:
    async def processor(job: Job) -> None:
        return None

    with pytest.raises(ValueError):
        Worker(queues.processing, processor, concurrency=0)
    worker = Worker(queues.processing, processor)
    with pytest.raises(ValueError):
        worker.on("drained", lambda: None)


def test_process_next_completes_job_and_emits_event(queues: InvoiceQueues) -> None:
    queue = queues.processing
    job = queue.add("process-invoice", {"invoice_id": 1})
    completed = []

    async def processor(active: Job) -> dict:
        return {"success": True, "invoice_id": active.data["invoice_id"]}

    worker = Worker(queue, processor)
    worker.on("completed", lambda done, result: completed.append((done.id, result)))

    processed = asyncio.run(worker.process_next())

    assert processed is not None and processed.id == job.id
    assert completed == [(job.id, {"success": True, "invoice_id": 1})]
    stored = queue.get_job(job.id)
    assert stored.state == "completed"
    assert stored.return_value == {"success": True, "invoice_id": 1}


def test_process_next_failure_schedules_retry(queues: InvoiceQueues, clock) -> None:
    queue = queues.processing
    job = queue.add("process-invoice", {"invoice_id": 1})
    failures = []

    async def processor(_job: Job) -> None:
        raise RuntimeError("parse failed")

    worker = Worker(queue, processor)
    worker.on("failed", lambda failed, exc: failures.append((failed.id, str(exc))))

    asyncio.run(worker.process_next())

    assert failures == [(job.id, "parse failed")]
    stored = queue.get_job(job.id)
    assert stored.state == "delayed"
    assert stored.ready_at == clock.now + 2000


def test_process_next_returns_none_when_queue_is_empty(queues: InvoiceQueues) -> None:
    async def processor(_job: Job) -> None:
        raise AssertionError("should not be called")

    assert asyncio.run(Worker(queues.processing, processor).process_next()) is None


def test_run_processes_jobs_until_closed(queues: InvoiceQueues) -> None:
    queue = queues.processing
    for invoice_id in range(1, 4):
        queue.add("process-invoice", {"invoice_id": invoice_id})
    seen = []

    async def processor(job: Job) -> int:
        seen.append(job.data["invoice_id"])
        await asyncio.sleep(0)
        return job.data["invoice_id"]

    async def scenario() -> Worker:
        worker = Worker(queue, processor, concurrency=2, poll_interval=0.01)
        task = asyncio.create_task(worker.run())
        for _ in range(300):
            if queue.get_counts()["completed"] == 3:
                break
            await asyncio.sleep(0.01)
        await worker.close()
        await task
        return worker

    worker = asyncio.run(scenario())

    assert sorted(seen) == [1, 2, 3]
    assert queue.get_counts()["completed"] == 3
    assert not worker.running


def test_run_stops_when_queue_is_closed(queues: InvoiceQueues) -> None:
    async def processor(_job: Job) -> None:
        return None

    queues.processing.close()
    worker = Worker(queues.processing, processor, poll_interval=0.01)

    asyncio.run(asyncio.wait_for(worker.run(), timeout=2))

    assert not worker.running


def test_queue_errors_while_recording_outcome_emit_error_event(queues: InvoiceQueues, monkeypatch) -> None:
    queue = queues.processing
    job = queue.add("process-invoice", {"invoice_id": 1})
    errors = []
    completed = []

    def redis_down(*_args):
        raise ConnectionError("redis down")

    async def processor(_job: Job) -> int:
        return 1

    monkeypatch.setattr(queue, "complete", redis_down)
    worker = Worker(queue, processor)
    worker.on("error", errors.append)
    worker.on("completed", lambda *args: completed.append(args))

    asyncio.run(worker.process_next())

    assert [str(error) for error in errors] == ["redis down"]
    assert completed == []
    assert queue.get_state(job.id) == "active"


def test_check_stalled_requeues_abandoned_job(redis_connection, clock) -> None:
    queue = JobQueue("stalled", redis_connection, default_job_options=JobOptions(attempts=2), prefix="test", clock=clock)
    job = queue.add("process-invoice", {"invoice_id": 1})
    queue.fetch_next()

    async def processor(_job: Job) -> None:
        return None

    worker = Worker(queue, processor, stalled_timeout_ms=1000)
    assert asyncio.run(worker.check_stalled()) == []

    clock.advance(1000)
    assert asyncio.run(worker.check_stalled()) == [job.id]
    assert queue.get_state(job.id) == "waiting"
    assert asyncio.run(Worker(queue, processor, stalled_timeout_ms=None).check_stalled()) == []


def test_run_recovers_stalled_jobs_on_startup(redis_connection, clock) -> None:
    queue = JobQueue("stalled", redis_connection, default_job_options=JobOptions(attempts=2), prefix="test", clock=clock)
    job = queue.add("process-invoice", {"invoice_id": 5})
    queue.fetch_next()
    clock.advance(10_000)
    seen = []

    async def processor(active: Job) -> int:
        seen.append(active.id)
        return active.data["invoice_id"]

    async def scenario() -> None:
        worker = Worker(queue, processor, poll_interval=0.01, stalled_timeout_ms=5000)
        task = asyncio.create_task(worker.run())
        for _ in range(300):
            if queue.get_state(job.id) == "completed":
                break
            await asyncio.sleep(0.01)
        await worker.close()
        await task

    asyncio.run(scenario())

    assert seen == [job.id]
    stored = queue.get_job(job.id)
    assert stored.state == "completed"
    assert stored.attempts_made == 2


def test_graceful_shutdown_closes_workers_before_queues(queues: InvoiceQueues) -> None:
    order = []

    async def close_workers() -> None:
        order.append(("workers", queues.processing.closed))

    asyncio.run(graceful_shutdown(queues, on_shutdown=close_workers))

    assert order == [("workers", False)]
    assert queues.processing.closed
    assert queues.retry.closed


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
def test_shutdown_handler_reacts_to_signal(queues: InvoiceQueues) -> None:
    calls = []

    async def close_workers() -> None:
        calls.append("closed")

    async def scenario() -> None:
        finished = install_shutdown_handler(queues, on_shutdown=close_workers, signals=(signal.SIGUSR1,))
        os.kill(os.getpid(), signal.SIGUSR1)
        await asyncio.wait_for(finished.wait(), timeout=2)

    asyncio.run(scenario())

    assert calls == ["closed"]
    assert queues.processing.closed
    assert queues.retry.closed
