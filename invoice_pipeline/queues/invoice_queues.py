"""Invoice processing queues and their job options."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from redis import Redis

from invoice_pipeline.config.redis_client import QUEUE_PREFIX
from invoice_pipeline.queues.job_queue import (
    BackoffPolicy,
    Clock,
    Job,
    JobOptions,
    JobQueue,
    RetentionPolicy,
    system_clock_ms,
)
from invoice_pipeline.schemas import InvoiceProcessingJob, InvoiceRetryJob

logger = logging.getLogger(__name__)

INVOICE_PROCESSING_QUEUE = "invoice-processing"
INVOICE_RETRY_QUEUE = "invoice-retry"
PROCESS_INVOICE_JOB = "process-invoice"
REQUEUE_INVOICE_JOB = "requeue-invoice"

HOUR = 3600
DAY = 24 * HOUR

# Main ingestion queue: 3 attempts, 2s/4s between them.
INVOICE_PROCESSING_OPTIONS = JobOptions(
    attempts=3,
    backoff=BackoffPolicy(type="exponential", delay_ms=2000),
    remove_on_complete=RetentionPolicy(count=5, age_seconds=HOUR),
    remove_on_fail=RetentionPolicy(count=20, age_seconds=DAY),
)

# Manual retries wait 10 minutes and get a single attempt.
INVOICE_RETRY_OPTIONS = JobOptions(
    attempts=1,
    delay_ms=10 * 60 * 1000,
    remove_on_complete=RetentionPolicy(count=50, age_seconds=7 * DAY),
    remove_on_fail=RetentionPolicy(count=100, age_seconds=30 * DAY),
)


@dataclass
class InvoiceQueues:
    """Both invoice queues sharing one Redis connection."""

    connection: Redis
    processing: JobQueue
    retry: JobQueue
    _shut_down: bool = False

    def get(self, name: str) -> JobQueue:
        if name == self.processing.name:
            return self.processing
        if name == self.retry.name:
            return self.retry
        raise KeyError(name)

    def shutdown(self) -> None:
        """Close the processing queue, then the retry queue, then the connection."""

        if self._shut_down:
            return
        logger.info("[Queues] Shutting down gracefully...")
        self.processing.close()
        self.retry.close()
        self.connection.close()
        self._shut_down = True


def create_invoice_queues(
    connection: Redis,
    *,
    prefix: str = QUEUE_PREFIX,
    clock: Clock = system_clock_ms,
) -> InvoiceQueues:
    queues = InvoiceQueues(
        connection=connection,
        processing=JobQueue(
            INVOICE_PROCESSING_QUEUE,
            connection,
            default_job_options=INVOICE_PROCESSING_OPTIONS,
            prefix=prefix,
            clock=clock,
        ),
        retry=JobQueue(
            INVOICE_RETRY_QUEUE,
            connection,
            default_job_options=INVOICE_RETRY_OPTIONS,
            prefix=prefix,
            clock=clock,
        ),
    )
    logger.info("[Queues] Invoice processing queues initialized")
    return queues


def enqueue_invoice_processing(queues: InvoiceQueues, payload: InvoiceProcessingJob) -> Job:
    return queues.processing.add(PROCESS_INVOICE_JOB, payload.model_dump())


def enqueue_invoice_retry(queues: InvoiceQueues, payload: InvoiceRetryJob) -> Job:
    return queues.retry.add(REQUEUE_INVOICE_JOB, payload.model_dump())


async def graceful_shutdown(
    queues: InvoiceQueues,
    *,
    on_shutdown: Optional[Callable[[], Awaitable[Any]]] = None,
) -> None:
    """Run ``on_shutdown`` (typically closing workers), then shut the queues down."""

    if on_shutdown is not None:
        await on_shutdown()
    queues.shutdown()


def install_shutdown_handler(
    queues: InvoiceQueues,
    *,
    on_shutdown: Optional[Callable[[], Awaitable[Any]]] = None,
    signals: Tuple[int, ...] = (signal.SIGTERM, signal.SIGINT),
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> asyncio.Event:
    """Shut everything down when the process receives a termination signal.

    Returns an event set once the shutdown sequence has finished.
    """

    loop = loop or asyncio.get_running_loop()
    finished = asyncio.Event()
    started = False
    tasks: list = []

    async def _shutdown(signum: int) -> None:
        try:
            await graceful_shutdown(queues, on_shutdown=on_shutdown)
        finally:
            finished.set()
        logger.info("Shutdown after signal %s complete", signum)

    def _handle(signum: int) -> None:
        nonlocal started
        logger.info("Received signal %s", signum)
        if started:
            return
        started = True
        tasks.append(loop.create_task(_shutdown(signum)))

    for signum in signals:
        loop.add_signal_handler(signum, _handle, signum)
    return finished


__all__ = [
    "INVOICE_PROCESSING_OPTIONS",
    "INVOICE_PROCESSING_QUEUE",
    "INVOICE_RETRY_OPTIONS",
    "INVOICE_RETRY_QUEUE",
    "InvoiceQueues",
    "PROCESS_INVOICE_JOB",
    "REQUEUE_INVOICE_JOB",
    "create_invoice_queues",
    "enqueue_invoice_processing",
    "enqueue_invoice_retry",
    "graceful_shutdown",
    "install_shutdown_handler",
]
