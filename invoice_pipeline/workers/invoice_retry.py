"""Delayed manual retries: push an invoice back on the processing queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from invoice_pipeline.queues.invoice_queues import (
    INVOICE_RETRY_QUEUE,
    REQUEUE_INVOICE_JOB,
    InvoiceQueues,
    enqueue_invoice_processing,
)
from invoice_pipeline.queues.job_queue import Clock, Job, UnrecoverableError, system_clock_ms
from invoice_pipeline.schemas import InvoiceProcessingJob, InvoiceRetryJob
from invoice_pipeline.services.invoice_repository import create_worker_dao
from invoice_pipeline.workers.invoice_processing import DaoFactory
from invoice_pipeline.workers.worker import Worker

logger = logging.getLogger(__name__)

RETRY_CONCURRENCY = 3


def create_invoice_retry_processor(
    queues: InvoiceQueues,
    *,
    dao_factory: DaoFactory = create_worker_dao,
    clock: Clock = system_clock_ms,
) -> Callable[[Job], Awaitable[Dict[str, Any]]]:
    async def requeue_invoice(job: Job) -> Dict[str, Any]:
        payload = InvoiceRetryJob.model_validate(job.data)
        started = clock()
        dao = dao_factory(payload.tenant_id)
        logger.info("[RetryWorker] Processing retry for invoice #%s", payload.invoice_id)

        try:
            invoice = await dao.fetch_invoice(payload.invoice_id)
            if invoice is None:
                raise UnrecoverableError(f"Facture #{payload.invoice_id} introuvable.")

            if invoice.get("status") == "approved":
                logger.warning("[RetryWorker] Invoice #%s already approved, skipping retry", payload.invoice_id)
                return {"success": False, "reason": "duplicate", "invoice_id": payload.invoice_id}

            await dao.update_invoice(payload.invoice_id, {"status": "pending", "error_message": None})
            processing_job = await asyncio.to_thread(
                enqueue_invoice_processing,
                queues,
                InvoiceProcessingJob(
                    invoice_id=payload.invoice_id,
                    tenant_id=payload.tenant_id,
                    ocr_text=invoice.get("raw_text") or "",
                    file_path=invoice.get("file_url") or "",
                    upload_source=invoice.get("upload_source") or "web",
                    user_id=payload.user_id,
                    mime_type=invoice.get("file_type"),
                ),
            )
        except Exception as exc:
            await dao.record_worker_metric(
                {
                    "queue_name": INVOICE_RETRY_QUEUE,
                    "job_name": REQUEUE_INVOICE_JOB,
                    "job_id": job.id,
                    "duration_ms": clock() - started,
                    "status": "FAILED",
                    "error_message": str(exc),
                    "attempts": job.attempts_made + 1,
                }
            )
            raise

        logger.info("[RetryWorker] Invoice #%s re-queued as job %s", payload.invoice_id, processing_job.id)
        await dao.record_worker_metric(
            {
                "queue_name": INVOICE_RETRY_QUEUE,
                "job_name": REQUEUE_INVOICE_JOB,
                "job_id": job.id,
                "duration_ms": clock() - started,
                "status": "COMPLETED",
                "attempts": job.attempts_made + 1,
            }
        )
        return {"success": True, "invoice_id": payload.invoice_id, "processing_job_id": processing_job.id}

    return requeue_invoice


def create_invoice_retry_worker(
    queues: InvoiceQueues,
    *,
    processor: Optional[Callable[[Job], Awaitable[Any]]] = None,
    poll_interval: float = 1.0,
) -> Worker:
    worker = Worker(
        queues.retry,
        processor or create_invoice_retry_processor(queues),
        concurrency=RETRY_CONCURRENCY,
        poll_interval=poll_interval,
        name="RetryWorker",
    )
    worker.on("completed", lambda job, _result: logger.info("[RetryWorker] Retry job %s completed", job.id))
    worker.on("failed", lambda job, exc: logger.error("[RetryWorker] Retry job %s failed: %s", job.id, exc))
    return worker


__all__ = ["create_invoice_retry_processor", "create_invoice_retry_worker"]
