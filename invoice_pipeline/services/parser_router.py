"""Choose between AI extraction and the rule-based parser for an invoice."""

from __future__ import annotations

import asyncio
import io
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from invoice_pipeline.schemas import ParsedInvoice
from invoice_pipeline.services.ai_invoice_parser import (
    ExtractionUnavailableError,
    InvoiceExtractionError,
    extract_invoice_from_image,
    extract_invoice_from_text,
    is_unavailable_error,
)
from invoice_pipeline.services.invoice_parser import InvoiceParsingError, parse_invoice_text

logger = logging.getLogger(__name__)

AI_RETRY_DELAYS = (2.0, 4.0, 8.0)
MAX_PDF_TEXT_CHARS = 15000

TextExtractor = Callable[[str], Awaitable[ParsedInvoice]]
ImageExtractor = Callable[[bytes, str], Awaitable[ParsedInvoice]]
RulesParser = Callable[[str], ParsedInvoice]
Sleep = Callable[[float], Awaitable[None]]


def is_usable(parsed: Optional[ParsedInvoice]) -> bool:
    """A result needs a supplier or invoice number and at least one described line."""

    if parsed is None:
        return False
    if not parsed.header.supplier_name and not parsed.header.invoice_number:
        return False
    return any(item.original_description.strip() for item in parsed.line_items)


def extract_pdf_text(data: bytes) -> str:
    """Return the embedded text of a PDF, or an empty string when it has none."""

    try:
        reader = PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError) as exc:
        raise InvoiceParsingError("Impossible d'ouvrir le PDF : fichier corrompu ou chiffré.") from exc

    pages = []
    for page in reader.pages:
        try:
            pages.append(page.extract_text() or "")
        except (PdfReadError, KeyError, ValueError):  # pragma: no cover - best effort per page
            logger.debug("Skipping unreadable PDF page")
            continue
    return "\n".join(pages)[:MAX_PDF_TEXT_CHARS]


def is_pdf(file_path: Optional[str], mime_type: Optional[str]) -> bool:
    if mime_type:
        return mime_type.lower() == "application/pdf"
    return Path(file_path or "").suffix.lower() == ".pdf"


def is_image(file_path: Optional[str], mime_type: Optional[str]) -> bool:
    if mime_type:
        return mime_type.lower().startswith("image/")
    return Path(file_path or "").suffix.lower() in {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tif", ".tiff"}


class InvoiceParserRouter:
    """AI extraction first, retried while the service is unavailable, rules parser as fallback."""

    def __init__(
        self,
        *,
        text_extractor: TextExtractor = extract_invoice_from_text,
        image_extractor: ImageExtractor = extract_invoice_from_image,
        rules_parser: RulesParser = parse_invoice_text,
        retry_delays: Sequence[float] = AI_RETRY_DELAYS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.text_extractor = text_extractor
        self.image_extractor = image_extractor
        self.rules_parser = rules_parser
        self.retry_delays = tuple(retry_delays)
        self.sleep = sleep

    async def parse(
        self,
        ocr_text: str,
        *,
        file_path: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> ParsedInvoice:
        text = ocr_text or ""
        if not text.strip() and file_path and is_pdf(file_path, mime_type):
            text = await asyncio.to_thread(_read_pdf_file, file_path)

        ai_result: Optional[ParsedInvoice] = None
        last_error: Optional[Exception] = None
        if text.strip():
            ai_result, last_error = await self._extract_with_retries(lambda: self.text_extractor(text))
        elif file_path and is_image(file_path, mime_type):
            data = await asyncio.to_thread(Path(file_path).read_bytes)
            image_mime = mime_type or "image/jpeg"
            ai_result, last_error = await self._extract_with_retries(lambda: self.image_extractor(data, image_mime))

        if is_usable(ai_result):
            logger.info("[ParserRouter] AI extraction succeeded (%s lines)", len(ai_result.line_items))
            return ai_result

        if text.strip():
            logger.info("[ParserRouter] Falling back to rule-based parser")
            try:
                rules_result = self.rules_parser(text)
            except InvoiceParsingError as exc:
                logger.warning("[ParserRouter] Rule-based parser failed: %s", exc)
                rules_result = None
            if is_usable(rules_result):
                return rules_result

        if last_error is not None and is_unavailable_error(last_error):
            raise ExtractionUnavailableError(str(last_error)) from last_error
        if last_error is not None:
            raise InvoiceParsingError(f"Impossible d'extraire la facture : {last_error}") from last_error
        raise InvoiceParsingError("Aucune donnée exploitable n'a été extraite de la facture.")

    async def _extract_with_retries(
        self, call: Callable[[], Awaitable[ParsedInvoice]]
    ) -> tuple[Optional[ParsedInvoice], Optional[Exception]]:
        attempts = len(self.retry_delays)
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                logger.info("[ParserRouter] AI attempt %s/%s", attempt + 1, attempts)
                return await call(), None
            except (InvoiceExtractionError, RuntimeError) as exc:
                last_error = exc
                if attempt == attempts - 1:
                    logger.error("[ParserRouter] AI failed after %s attempts: %s", attempts, exc)
                elif isinstance(exc, ExtractionUnavailableError):
                    delay = self.retry_delays[attempt]
                    logger.warning("[ParserRouter] AI unavailable, retrying in %ss", delay)
                    await self.sleep(delay)
                else:
                    logger.warning("[ParserRouter] AI error, retrying immediately: %s", exc)
        return None, last_error


def _read_pdf_file(file_path: str) -> str:
    return extract_pdf_text(Path(file_path).read_bytes())


__all__ = [
    "AI_RETRY_DELAYS",
    "InvoiceParserRouter",
    "extract_pdf_text",
    "is_image",
    "is_pdf",
    "is_usable",
]
