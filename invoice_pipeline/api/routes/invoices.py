"""Invoice import endpoints: upload, status, retry and line matching."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile

from invoice_pipeline.api.dependencies import (
    get_current_tenant_id,
    get_current_user_id,
    get_invoice_dao,
    get_invoice_queues,
)
from invoice_pipeline.queues.invoice_queues import (
    INVOICE_RETRY_OPTIONS,
    InvoiceQueues,
    enqueue_invoice_processing,
    enqueue_invoice_retry,
)
from invoice_pipeline.queues.job_queue import QueueClosedError
from invoice_pipeline.schemas import (
    InvoiceProcessingJob,
    InvoiceRecord,
    InvoiceRetryJob,
    InvoiceUploadResponse,
    LineMatchPayload,
    ProductMatch,
    RetryResponse,
    UploadSource,
)
from invoice_pipeline.security.guards import rate_limit_request
from invoice_pipeline.services.invoice_parser import InvoiceParsingError
from invoice_pipeline.services.invoice_repository import SupabaseInvoiceDAO
from invoice_pipeline.services.invoice_storage import InvoiceUploadError, store_invoice_upload
from invoice_pipeline.services.parser_router import extract_pdf_text
from invoice_pipeline.services.product_matcher import ProductMatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["invoices"])

PENDING_STATUS_WINDOW = timedelta(seconds=30)
UPLOAD_RATE_LIMIT = 30
UPLOAD_RATE_WINDOW_SECONDS = 60


@router.post("/upload", response_model=InvoiceUploadResponse, status_code=202)
async def upload_invoice(
    request: Request,
    file: UploadFile = File(...),
    upload_source: UploadSource = Form(default="web"),
    tenant_id: int = Depends(get_current_tenant_id),
    user_id: Optional[str] = Depends(get_current_user_id),
    dao: SupabaseInvoiceDAO = Depends(get_invoice_dao),
    queues: InvoiceQueues = Depends(get_invoice_queues),
) -> InvoiceUploadResponse:
    """Store the file, create a ``pending`` invoice and queue it for processing."""

    rate_limit_request(
        request,
        scope="invoice-upload",
        limit=UPLOAD_RATE_LIMIT,
        window_seconds=UPLOAD_RATE_WINDOW_SECONDS,
        tenant_id=tenant_id,
    )
    data = await file.read()
    try:
        stored = await asyncio.to_thread(
            store_invoice_upload,
            file.filename or "",
            file.content_type,
            data,
            tenant_id=tenant_id,
        )
    except InvoiceUploadError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    ocr_text = ""
    if stored.kind == "pdf":
        try:
            ocr_text = await asyncio.to_thread(extract_pdf_text, data)
        except InvoiceParsingError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    invoice = await dao.create_invoice(
        {
            "file_name": stored.file_name,
            "file_url": str(stored.path),
            "file_type": stored.mime_type,
            "raw_text": ocr_text or None,
            "upload_source": upload_source,
            "uploaded_by": user_id,
        }
    )
    invoice_id = int(invoice["id"])

    try:
        job = await asyncio.to_thread(
            enqueue_invoice_processing,
            queues,
            InvoiceProcessingJob(
                invoice_id=invoice_id,
                tenant_id=tenant_id,
                ocr_text=ocr_text,
                file_path=str(stored.path),
                upload_source=upload_source,
                user_id=user_id,
                mime_type=stored.mime_type,
            ),
        )
    except QueueClosedError as exc:
        await dao.update_invoice(invoice_id, {"status": "error", "error_message": "File de traitement indisponible."})
        raise HTTPException(status_code=503, detail="La file de traitement est indisponible.") from exc

    logger.info("Invoice %s created and queued as job %s", invoice_id, job.id)
    return InvoiceUploadResponse(
        id=invoice_id,
        status="pending",
        message="Facture reçue, traitement en cours.",
        file_name=stored.file_name,
        job_id=job.id,
    )


@router.get("/pending-status")
async def pending_status(
    since: Optional[datetime] = Query(default=None),
    dao: SupabaseInvoiceDAO = Depends(get_invoice_dao),
) -> Dict[str, Any]:
    """Invoices that finished processing (``reviewing`` or ``error``) recently."""

    boundary = since or datetime.now(timezone.utc) - PENDING_STATUS_WINDOW
    if boundary.tzinfo is None:
        boundary = boundary.replace(tzinfo=timezone.utc)
    invoices = await dao.fetch_recently_processed(boundary)
    return {"invoices": invoices}


@router.get("/{invoice_id}", response_model=InvoiceRecord)
async def get_invoice(invoice_id: int, dao: SupabaseInvoiceDAO = Depends(get_invoice_dao)) -> InvoiceRecord:
    invoice = await _require_invoice(dao, invoice_id)
    lines = await dao.fetch_invoice_lines(invoice_id)
    return InvoiceRecord.model_validate({**invoice, "lines": lines})


@router.post("/{invoice_id}/retry", response_model=RetryResponse, status_code=202)
async def retry_invoice(
    invoice_id: int,
    tenant_id: int = Depends(get_current_tenant_id),
    user_id: Optional[str] = Depends(get_current_user_id),
    dao: SupabaseInvoiceDAO = Depends(get_invoice_dao),
    queues: InvoiceQueues = Depends(get_invoice_queues),
) -> RetryResponse:
    """Schedule a delayed reprocessing on the retry queue."""

    invoice = await _require_invoice(dao, invoice_id)
    if invoice.get("status") == "approved":
        raise HTTPException(status_code=409, detail="La facture est déjà approuvée.")
    try:
        job = await asyncio.to_thread(
            enqueue_invoice_retry,
            queues,
            InvoiceRetryJob(invoice_id=invoice_id, tenant_id=tenant_id, user_id=user_id),
        )
    except QueueClosedError as exc:
        raise HTTPException(status_code=503, detail="La file de traitement est indisponible.") from exc
    return RetryResponse(
        invoice_id=invoice_id,
        job_id=job.id,
        status=job.state,
        delay_ms=INVOICE_RETRY_OPTIONS.delay_ms,
    )


@router.get("/{invoice_id}/lines/{line_id}/suggestions", response_model=List[ProductMatch])
async def line_suggestions(
    invoice_id: int,
    line_id: int,
    limit: int = Query(default=10, ge=1, le=50),
    dao: SupabaseInvoiceDAO = Depends(get_invoice_dao),
) -> List[ProductMatch]:
    line = await _require_line(dao, invoice_id, line_id)
    products = await dao.fetch_products()
    matcher = ProductMatcher(products)
    return matcher.get_suggestions(line.get("clean_description") or line["original_description"], limit=limit)


@router.post("/{invoice_id}/lines/{line_id}/match")
async def confirm_line_match(
    invoice_id: int,
    line_id: int,
    payload: LineMatchPayload,
    user_id: Optional[str] = Depends(get_current_user_id),
    dao: SupabaseInvoiceDAO = Depends(get_invoice_dao),
) -> Dict[str, Any]:
    """Link a line to a product and remember the pairing for future invoices."""

    invoice = await _require_invoice(dao, invoice_id)
    line = await _require_line(dao, invoice_id, line_id)
    products = await dao.fetch_products()
    if not any(int(product["id"]) == payload.product_id for product in products if product.get("id") is not None):
        raise HTTPException(status_code=404, detail="Produit introuvable.")

    updated = await dao.update_line(
        invoice_id,
        line_id,
        {
            "product_id": payload.product_id,
            "variation_id": payload.variation_id,
            "status": "matched",
            "match_confidence": 100,
        },
    )
    await dao.save_match_history(
        invoice_description=line["original_description"],
        product_id=payload.product_id,
        variation_id=payload.variation_id,
        supplier_name=invoice.get("supplier_name"),
        initial_confidence=line.get("match_confidence"),
        confirmed_by=user_id,
    )
    return {"success": True, "line": updated}


async def _require_invoice(dao: SupabaseInvoiceDAO, invoice_id: int) -> Dict[str, Any]:
    invoice = await dao.fetch_invoice(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Facture introuvable.")
    return invoice


async def _require_line(dao: SupabaseInvoiceDAO, invoice_id: int, line_id: int) -> Dict[str, Any]:
    line = await dao.fetch_invoice_line(invoice_id, line_id)
    if line is None:
        raise HTTPException(status_code=404, detail="Ligne de facture introuvable.")
    return line


__all__ = ["router"]
