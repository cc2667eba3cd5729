import pytest

from invoice_pipeline.queues.invoice_queues import (
    INVOICE_PROCESSING_QUEUE,
    INVOICE_RETRY_QUEUE,
    InvoiceQueues,
    create_invoice_queues,
    enqueue_invoice_processing,
    enqueue_invoice_retry,
)
from invoice_pipeline.queues.job_queue import (
    BackoffPolicy,
    JobOptions,
    JobQueue,
    QueueClosedError,
    RetentionPolicy,
    UnrecoverableError,
)
from invoice_pipeline.schemas import InvoiceProcessingJob, InvoiceRetryJob


def _processing_payload(invoice_id: int = 1) -> InvoiceProcessingJob:
    return InvoiceProcessingJob(
        invoice_id=invoice_id,
        tenant_id=7,
        ocr_text="texte",
        file_path=f"/uploads/7/{invoice_id}.pdf",
        user_id="user-1",
        mime_type="application/pdf",
    )


def test_backoff_policy_delays() -> None:
    exponential = BackoffPolicy(type="exponential", delay_ms=2000)
    fixed = BackoffPolicy(type="fixed", delay_ms=500)

    assert [exponential.compute_delay(n) for n in (1, 2, 3)] == [2000, 4000, 8000]
    assert [fixed.compute_delay(n) for n in (1, 2, 3)] == [500, 500, 500]
    assert exponential.compute_delay(0) == 0


def test_processing_job_is_retried_with_exponential_backoff(queues: InvoiceQueues, clock) -> None:
    queue = queues.processing
    job = enqueue_invoice_processing(queues, _processing_payload())
    assert job.state == "waiting"
    assert job.opts.attempts == 3

    active = queue.fetch_next()
    assert active is not None and active.id == job.id
    failed = queue.fail(active, RuntimeError("boom"))
    assert failed.state == "delayed"
    assert failed.attempts_made == 1
    assert failed.ready_at == clock.now + 2000

    clock.advance(1999)
    assert queue.fetch_next() is None
    clock.advance(1)
    second = queue.fetch_next()
    assert second is not None and second.attempts_made == 1

    failed = queue.fail(second, RuntimeError("boom"))
    assert failed.state == "delayed"
    assert failed.ready_at == clock.now + 4000
    clock.advance(3999)
    assert queue.fetch_next() is None
    clock.advance(1)
    third = queue.fetch_next()
    assert third is not None

    final = queue.fail(third, RuntimeError("boom"))
    assert final.state == "failed"
    assert final.attempts_made == 3
    assert queue.get_state(job.id) == "failed"
    assert queue.get_job(job.id).failed_reason == "boom"
    assert len(queue.get_job(job.id).stacktrace) == 3
    assert queue.fetch_next() is None
    assert queue.get_counts() == {"waiting": 0, "active": 0, "completed": 0, "failed": 1, "delayed": 0}


def test_unrecoverable_error_skips_remaining_attempts(queues: InvoiceQueues) -> None:
    queue = queues.processing
    job = enqueue_invoice_processing(queues, _processing_payload())
    active = queue.fetch_next()

    result = queue.fail(active, UnrecoverableError("Facture #1 introuvable."))

    assert result.state == "failed"
    assert result.attempts_made == 1
    assert queue.get_job(job.id).attempts_remaining == 2


def test_stalled_active_job_is_recovered_by_a_new_consumer(redis_connection, queues: InvoiceQueues, clock) -> None:
    job = enqueue_invoice_processing(queues, _processing_payload())
    assert queues.processing.fetch_next().id == job.id

    restarted = create_invoice_queues(redis_connection, prefix="test", clock=clock).processing
    assert restarted.recover_stalled(60_000) == []
    assert restarted.get_counts()["active"] == 1

    clock.advance(60_000)
    assert restarted.recover_stalled(60_000) == [job.id]
    assert restarted.recover_stalled(60_000) == []

    recovered = restarted.get_job(job.id)
    assert recovered.state == "delayed"
    assert recovered.attempts_made == 1
    assert recovered.failed_reason.startswith("Job stalled")
    assert restarted.get_counts()["active"] == 0
    clock.advance(2000)
    assert restarted.fetch_next().id == job.id


def test_stalled_job_without_attempts_left_fails(queues: InvoiceQueues, clock) -> None:
    queue = queues.retry
    job = queue.add("requeue-invoice", InvoiceRetryJob(invoice_id=3, tenant_id=7).model_dump(), delay_ms=0)
    assert queue.fetch_next().id == job.id

    clock.advance(24 * 60 * 60 * 1000)

    assert queue.recover_stalled(60_000) == [job.id]
    assert queue.get_state(job.id) == "failed"
    assert queue.get_counts() == {"waiting": 0, "active": 0, "completed": 0, "failed": 1, "delayed": 0}


def test_retry_queue_waits_ten_minutes_and_runs_once(queues: InvoiceQueues, clock) -> None:
    queue = queues.retry
    job = enqueue_invoice_retry(queues, InvoiceRetryJob(invoice_id=3, tenant_id=7, user_id="user-1"))

    assert job.state == "delayed"
    assert job.ready_at == clock.now + 10 * 60 * 1000
    assert queue.fetch_next() is None

    clock.advance(10 * 60 * 1000 - 1)
    assert queue.fetch_next() is None
    clock.advance(1)
    active = queue.fetch_next()
    assert active is not None and active.data["invoice_id"] == 3

    failed = queue.fail(active, RuntimeError("boom"))
    assert failed.state == "failed"
    assert queue.get_counts()["delayed"] == 0


def test_completed_jobs_are_trimmed_by_count(queues: InvoiceQueues) -> None:
    queue = queues.processing
    ids = []
    for invoice_id in range(1, 8):
        job = enqueue_invoice_processing(queues, _processing_payload(invoice_id))
        ids.append(job.id)
        queue.complete(queue.fetch_next(), {"success": True})

    assert queue.get_counts()["completed"] == 5
    assert queue.get_job(ids[0]) is None
    assert queue.get_job(ids[1]) is None
    assert queue.get_job_ids("completed") == ids[2:]


def test_completed_jobs_are_trimmed_by_age(queues: InvoiceQueues, clock) -> None:
    queue = queues.processing
    first = enqueue_invoice_processing(queues, _processing_payload(1))
    queue.complete(queue.fetch_next(), {"success": True})

    clock.advance(3600 * 1000 + 1)
    second = enqueue_invoice_processing(queues, _processing_payload(2))
    queue.complete(queue.fetch_next(), {"success": True})

    assert queue.get_job(first.id) is None
    assert queue.get_state(second.id) == "completed"


def test_clean_applies_failed_retention(redis_connection, clock) -> None:
    queue = JobQueue(
        "scratch",
        redis_connection,
        default_job_options=JobOptions(remove_on_fail=RetentionPolicy(count=1)),
        prefix="test",
        clock=clock,
    )
    for index in range(3):
        queue.add("job", {"index": index})
    for _ in range(3):
        queue.fail(queue.fetch_next(), "nope")

    # retention ran after each failure already
    assert queue.clean() == {"completed": [], "failed": []}
    assert queue.get_counts()["failed"] == 1


def test_add_with_existing_job_id_returns_existing_job(queues: InvoiceQueues) -> None:
    first = queues.processing.add("process-invoice", {"invoice_id": 1}, job_id="invoice-1")
    second = queues.processing.add("process-invoice", {"invoice_id": 2}, job_id="invoice-1")

    assert second.id == first.id
    assert second.data == {"invoice_id": 1}
    assert queues.processing.get_counts()["waiting"] == 1


def test_job_status_and_metrics(queues: InvoiceQueues) -> None:
    queue = queues.processing
    job = enqueue_invoice_processing(queues, _processing_payload())
    enqueue_invoice_processing(queues, _processing_payload(2))
    queue.complete(queue.fetch_next(), {"success": True, "line_items": 2})

    status = queue.get_job_status(job.id)
    assert status["status"] == "completed"
    assert status["attempts_made"] == 1
    assert status["result"] == {"success": True, "line_items": 2}
    assert status["data"]["tenant_id"] == 7
    assert queue.get_job_status("missing") == {"status": "not-found"}

    metrics = queue.get_metrics()
    assert metrics["queue"] == INVOICE_PROCESSING_QUEUE
    assert metrics["waiting"] == 1
    assert metrics["completed"] == 1
    assert metrics["total"] == 1


def test_queues_lookup_by_name(queues: InvoiceQueues) -> None:
    assert queues.get(INVOICE_PROCESSING_QUEUE) is queues.processing
    assert queues.get(INVOICE_RETRY_QUEUE) is queues.retry
    with pytest.raises(KeyError):
        queues.get("unknown")


def test_shutdown_closes_both_queues(queues: InvoiceQueues) -> None:
    queues.shutdown()
    queues.shutdown()

    assert queues.processing.closed
    assert queues.retry.closed
    with pytest.raises(QueueClosedError):
        enqueue_invoice_processing(queues, _processing_payload())
    with pytest.raises(QueueClosedError):
        enqueue_invoice_retry(queues, InvoiceRetryJob(invoice_id=1, tenant_id=7))
