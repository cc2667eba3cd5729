"""Background processing of uploaded invoices."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from invoice_pipeline.queues.invoice_queues import INVOICE_PROCESSING_QUEUE, PROCESS_INVOICE_JOB, InvoiceQueues
from invoice_pipeline.queues.job_queue import Clock, Job, UnrecoverableError, system_clock_ms
from invoice_pipeline.schemas import InvoiceLineItem, InvoiceProcessingJob, MatchResult, ParsedInvoice
from invoice_pipeline.services.ai_invoice_parser import is_unavailable_error
from invoice_pipeline.services.invoice_repository import SupabaseInvoiceDAO, create_worker_dao, utc_now_iso
from invoice_pipeline.services.invoice_validation import validate_invoice
from invoice_pipeline.services.package_analysis import enrich_line_item
from invoice_pipeline.services.parser_router import InvoiceParserRouter
from invoice_pipeline.services.product_matcher import ProductMatcher, line_status_for
from invoice_pipeline.workers.worker import RateLimiter, Worker

logger = logging.getLogger(__name__)

PROCESSING_CONCURRENCY = 5
PROCESSING_RATE_LIMIT = 10
PROCESSING_RATE_WINDOW_MS = 60_000

UNAVAILABLE_MESSAGE = (
    "Le service d'extraction IA est temporairement indisponible. "
    "La facture sera retraitée automatiquement dès son retour."
)

DaoFactory = Callable[[int], SupabaseInvoiceDAO]


def build_line_record(item: InvoiceLineItem, match: MatchResult) -> Dict[str, Any]:
    """Flatten a parsed line and its match into an ``invoice_import_lines`` row."""

    package = item.package
    prices = item.computed_prices
    category = match.suggested_category
    return {
        "line_number": item.line_number,
        "original_description": item.original_description,
        "clean_description": item.clean_description,
        "quantity": item.quantity,
        "unit": item.unit,
        "unit_price": item.unit_price,
        "line_total": item.line_total,
        "tax_rate": item.tax_rate,
        "tax_amount": item.tax_amount,
        "package_type": package.package_type if package else None,
        "package_quantity": package.quantity if package else None,
        "package_unit": package.unit if package else None,
        "price_per_kg": prices.per_kg if prices else None,
        "price_per_liter": prices.per_liter if prices else None,
        "price_per_unit": prices.per_unit if prices else None,
        "product_id": match.product.product_id if match.product else None,
        "variation_id": match.product.variation_id if match.product else None,
        "match_confidence": match.confidence,
        "match_reason": match.product.match_reason if match.product else None,
        "suggestions": [suggestion.model_dump() for suggestion in match.suggestions],
        "suggested_family_id": category.family_id if category else None,
        "suggested_subfamily_id": category.subfamily_id if category else None,
        "status": line_status_for(match),
    }


def build_invoice_update(parsed: ParsedInvoice, *, errors: List[str], warnings: List[str]) -> Dict[str, Any]:
    header = parsed.header
    return {
        "status": "reviewing",
        "supplier_name": header.supplier_name,
        "supplier_tax_id": header.supplier_tax_id,
        "invoice_number": header.invoice_number,
        "invoice_date": header.invoice_date.isoformat() if header.invoice_date else None,
        "total_without_tax": header.total_without_tax,
        "total_tax": header.total_tax,
        "total_with_tax": header.total_with_tax,
        "raw_text": parsed.raw_text or None,
        "parsing_method": parsed.method,
        "validation_errors": errors,
        "validation_warnings": warnings,
        "error_message": None,
        "processed_at": utc_now_iso(),
    }


def create_invoice_processor(
    *,
    dao_factory: DaoFactory = create_worker_dao,
    router: Optional[InvoiceParserRouter] = None,
    clock: Clock = system_clock_ms,
) -> Callable[[Job], Awaitable[Dict[str, Any]]]:
    """Return the coroutine run for every ``process-invoice`` job."""

    parser_router = router or InvoiceParserRouter()

    async def process_invoice(job: Job) -> Dict[str, Any]:
        payload = InvoiceProcessingJob.model_validate(job.data)
        started = clock()
        dao = dao_factory(payload.tenant_id)
        logger.info("[Worker] Processing invoice #%s (tenant: %s)", payload.invoice_id, payload.tenant_id)

        invoice = await dao.fetch_invoice(payload.invoice_id)
        if invoice is None:
            raise UnrecoverableError(f"Facture #{payload.invoice_id} introuvable.")

        try:
            parsed = await parser_router.parse(
                payload.ocr_text,
                file_path=payload.file_path,
                mime_type=payload.mime_type,
            )
            parsed = parsed.model_copy(update={"line_items": [enrich_line_item(item) for item in parsed.line_items]})
            validation = validate_invoice(parsed)
            if not validation.valid:
                logger.warning(
                    "[Worker] Invoice #%s has %s validation error(s)", payload.invoice_id, len(validation.errors)
                )

            supplier_name = parsed.header.supplier_name
            products = await dao.fetch_products()
            history = await dao.fetch_match_history(supplier_name)
            matcher = ProductMatcher(products, history)
            lines = []
            for item in parsed.line_items:
                match = matcher.match(
                    item.clean_description or item.original_description,
                    supplier_name,
                    history_key=item.original_description,
                )
                lines.append(build_line_record(item, match))

            await dao.replace_invoice_lines(payload.invoice_id, lines)
            await dao.update_invoice(
                payload.invoice_id,
                build_invoice_update(parsed, errors=validation.errors, warnings=validation.warnings),
            )
        except Exception as exc:
            duration = clock() - started
            unavailable = is_unavailable_error(exc)
            logger.error("[Worker] Error processing invoice #%s: %s", payload.invoice_id, exc)
            if unavailable:
                logger.info("[Worker] Extraction service unavailable, invoice #%s will be retried", payload.invoice_id)
            await dao.update_invoice(
                payload.invoice_id,
                {
                    "status": "error",
                    "error_message": UNAVAILABLE_MESSAGE if unavailable else (str(exc) or "Erreur inconnue"),
                    "processed_at": utc_now_iso(),
                },
            )
            await dao.record_worker_metric(
                {
                    "queue_name": INVOICE_PROCESSING_QUEUE,
                    "job_name": PROCESS_INVOICE_JOB,
                    "job_id": job.id,
                    "duration_ms": duration,
                    "status": "FAILED",
                    "error_message": str(exc),
                    "attempts": job.attempts_made + 1,
                }
            )
            await dao.record_processing_metrics(
                {
                    "invoice_id": payload.invoice_id,
                    "upload_source": payload.upload_source,
                    "user_id": payload.user_id,
                    "parsing_method": "ai_unavailable" if unavailable else "failed",
                    "total_duration_ms": duration,
                    "success": False,
                    "line_items_extracted": 0,
                }
            )
            raise

        duration = clock() - started
        matched = sum(1 for line in lines if line["status"] == "matched")
        await dao.record_processing_metrics(
            {
                "invoice_id": payload.invoice_id,
                "upload_source": payload.upload_source,
                "user_id": payload.user_id,
                "parsing_method": parsed.method,
                "total_duration_ms": duration,
                "end_to_end_duration_ms": _end_to_end_ms(invoice.get("created_at")),
                "success": True,
                "line_items_extracted": len(lines),
            }
        )
        await dao.record_worker_metric(
            {
                "queue_name": INVOICE_PROCESSING_QUEUE,
                "job_name": PROCESS_INVOICE_JOB,
                "job_id": job.id,
                "duration_ms": duration,
                "status": "COMPLETED",
                "attempts": job.attempts_made + 1,
            }
        )
        logger.info(
            "[Worker] Invoice #%s processed in %sms (%s items, %s matched, method: %s)",
            payload.invoice_id,
            duration,
            len(lines),
            matched,
            parsed.method,
        )
        return {
            "success": True,
            "invoice_id": payload.invoice_id,
            "line_items": len(lines),
            "matched": matched,
            "method": parsed.method,
            "duration_ms": duration,
        }

    return process_invoice


def create_invoice_processing_worker(
    queues: InvoiceQueues,
    *,
    processor: Optional[Callable[[Job], Awaitable[Any]]] = None,
    poll_interval: float = 1.0,
) -> Worker:
    worker = Worker(
        queues.processing,
        processor or create_invoice_processor(),
        concurrency=PROCESSING_CONCURRENCY,
        limiter=RateLimiter(PROCESSING_RATE_LIMIT, PROCESSING_RATE_WINDOW_MS),
        poll_interval=poll_interval,
        name="InvoiceWorker",
    )
    worker.on("completed", lambda job, _result: logger.info("[InvoiceWorker] Job %s completed successfully", job.id))
    worker.on("failed", lambda job, exc: logger.error("[InvoiceWorker] Job %s failed: %s", job.id, exc))
    worker.on("error", lambda exc: logger.error("[InvoiceWorker] Worker error: %s", exc))
    return worker


def _end_to_end_ms(created_at: Any) -> Optional[int]:
    if not created_at:
        return None
    try:
        created = datetime.fromisoformat(str(created_at).replace("Z", "+00:00"))
    except ValueError:
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return int((datetime.now(timezone.utc) - created).total_seconds() * 1000)


__all__ = [
    "UNAVAILABLE_MESSAGE",
    "build_invoice_update",
    "build_line_record",
    "create_invoice_processing_worker",
    "create_invoice_processor",
]
