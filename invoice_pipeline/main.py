"""FastAPI application exposing the invoice import producer API."""

import logging
import os
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI

from invoice_pipeline.api.dependencies import get_invoice_queues
from invoice_pipeline.api.routes.invoices import router as invoices_router
from invoice_pipeline.api.routes.queues import router as queues_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if get_invoice_queues.cache_info().currsize:
        logger.info("Closing invoice queues")
        get_invoice_queues().shutdown()


app = FastAPI(title="Invoice Import Pipeline", lifespan=lifespan)

app.include_router(invoices_router)
app.include_router(queues_router)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("invoice_pipeline.main:app", host="127.0.0.1", port=8000, reload=True)
