"""Read-only inspection of the background job queues."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException

from invoice_pipeline.api.dependencies import get_current_tenant_id, get_invoice_queues
from invoice_pipeline.queues.invoice_queues import InvoiceQueues
from invoice_pipeline.queues.job_queue import JobQueue
from invoice_pipeline.schemas import JobStatusResponse, QueueMetricsResponse

router = APIRouter(prefix="/api/queues", tags=["queues"])


def _resolve_queue(queues: InvoiceQueues, queue_name: str) -> JobQueue:
    try:
        return queues.get(queue_name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="File d'attente inconnue.") from exc


@router.get("/{queue_name}/metrics", response_model=QueueMetricsResponse)
async def queue_metrics(
    queue_name: str,
    _tenant_id: int = Depends(get_current_tenant_id),
    queues: InvoiceQueues = Depends(get_invoice_queues),
) -> QueueMetricsResponse:
    queue = _resolve_queue(queues, queue_name)
    metrics = await asyncio.to_thread(queue.get_metrics)
    return QueueMetricsResponse.model_validate(metrics)


@router.get("/{queue_name}/jobs/{job_id}", response_model=JobStatusResponse)
async def job_status(
    queue_name: str,
    job_id: str,
    tenant_id: int = Depends(get_current_tenant_id),
    queues: InvoiceQueues = Depends(get_invoice_queues),
) -> JobStatusResponse:
    queue = _resolve_queue(queues, queue_name)
    status = await asyncio.to_thread(queue.get_job_status, job_id)
    if status.get("status") == "not-found" or status.get("data", {}).get("tenant_id") != tenant_id:
        raise HTTPException(status_code=404, detail="Tâche introuvable.")
    return JobStatusResponse.model_validate(status)


__all__ = ["router"]
