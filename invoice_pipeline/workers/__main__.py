"""Run the invoice workers: ``python -m invoice_pipeline.workers``."""

from __future__ import annotations

import asyncio
import logging
import os

from invoice_pipeline.config.redis_client import get_redis_connection
from invoice_pipeline.queues.invoice_queues import create_invoice_queues, install_shutdown_handler
from invoice_pipeline.workers.invoice_processing import create_invoice_processing_worker
from invoice_pipeline.workers.invoice_retry import create_invoice_retry_worker

logger = logging.getLogger("invoice_pipeline.workers")


async def run_workers() -> None:
    queues = create_invoice_queues(get_redis_connection())
    workers = [create_invoice_processing_worker(queues), create_invoice_retry_worker(queues)]

    async def close_workers() -> None:
        await asyncio.gather(*(worker.close() for worker in workers))

    finished = install_shutdown_handler(queues, on_shutdown=close_workers)
    runners = [asyncio.create_task(worker.run()) for worker in workers]
    await finished.wait()
    await asyncio.gather(*runners, return_exceptions=True)
    logger.info("Workers stopped")


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(run_workers())


if __name__ == "__main__":
    main()
