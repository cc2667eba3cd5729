"""OpenAI-backed extraction of invoices from text or scanned images."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from datetime import date
from functools import partial
from typing import Any, Callable, List, Optional

import openai

from invoice_pipeline.config.openai_client import (
    INVOICE_EXTRACTION_MODEL,
    INVOICE_VISION_MODEL,
    get_openai_client,
)
from invoice_pipeline.schemas import (
    ComputedPrices,
    InvoiceHeader,
    InvoiceLineItem,
    PackageInfo,
    ParsedInvoice,
)
from invoice_pipeline.services.invoice_parser import parse_date, parse_number

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 15000
MAX_COMPLETION_TOKENS = 8000
CODE_FENCE_PATTERN = re.compile(r"```(json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
UNAVAILABLE_MARKERS = ("overloaded", "503", "unavailable", "quota")

SYSTEM_INSTRUCTIONS = (
    "Tu reçois une facture fournisseur portugaise et tu dois produire un JSON structuré. "
    "Réponds uniquement avec un objet JSON de la forme : "
    '{"header": {"supplier_name": str, "supplier_tax_id": str, "invoice_number": str, '
    '"invoice_date": "YYYY-MM-DD", "total_without_tax": number, "total_tax": number, '
    '"total_with_tax": number}, "line_items": [{"line_number": number, '
    '"original_description": str, "clean_description": str, "quantity": number, "unit": str, '
    '"unit_price": number, "line_total": number, "tax_rate": number, "tax_amount": number, '
    '"package": {"package_type": str, "quantity": number, "unit": str}, '
    '"computed_prices": {"per_kg": number, "per_liter": number, "per_unit": number}}]}. '
    "Règles : ignore les en-têtes de tableau, adresses, contacts et pieds de page ; "
    "n'extrais que les lignes de produits ; convertis les montants en nombres (sans €) ; "
    "clean_description est le nom du produit sans l'emballage (ex. 'BIFE FRANGO PANADO' pour "
    "'BIFE FRANGO PANADO cx 4kg') ; package_type vaut caixa, saco, embalagem, garrafa ou pacote ; "
    "l'unité d'emballage vaut kg, g, L, ml ou un ; la colonne 'Un' indique l'unité d'achat (KG, UN, L) ; "
    "si l'achat est en KG sans emballage, per_kg = unit_price ; si l'achat est en UN avec un poids "
    "d'emballage, per_kg = unit_price / poids en kg ; omets les champs introuvables."
)


class InvoiceExtractionError(ValueError):
    """Raised when the model answer cannot be turned into an invoice."""


class ExtractionUnavailableError(RuntimeError):
    """Raised when the extraction service is overloaded or unreachable (transient)."""


async def extract_invoice_from_text(text: str) -> ParsedInvoice:
    """Ask the extraction model to structure OCR/PDF text."""

    if not text or not text.strip():
        raise InvoiceExtractionError("Le texte de la facture est vide.")
    request = partial(_request_invoice_from_text, text[:MAX_TEXT_CHARS])
    raw_response = await _call_model(request)
    return parse_ai_response(raw_response, raw_text=text)


async def extract_invoice_from_image(data: bytes, mime_type: str) -> ParsedInvoice:
    """Send a scanned invoice to the vision model."""

    if not data:
        raise InvoiceExtractionError("Le fichier envoyé est vide.")
    image_b64 = base64.b64encode(data).decode("ascii")
    request = partial(_request_invoice_from_image, image_b64, mime_type)
    raw_response = await _call_model(request)
    return parse_ai_response(raw_response, raw_text="")


async def _call_model(request: Callable[[], str]) -> str:
    try:
        return await asyncio.to_thread(request)
    except openai.OpenAIError as exc:
        if is_unavailable_error(exc):
            raise ExtractionUnavailableError(str(exc)) from exc
        raise InvoiceExtractionError(f"Erreur du service d'extraction : {exc}") from exc


def is_unavailable_error(exc: BaseException) -> bool:
    """True for errors worth retrying later: overload, 5xx, rate limits, timeouts."""

    if isinstance(exc, ExtractionUnavailableError):
        return True
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return True
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and (status_code >= 500 or status_code == 429):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in UNAVAILABLE_MARKERS)


def _request_invoice_from_text(invoice_text: str) -> str:
    completion = get_openai_client().chat.completions.create(
        model=INVOICE_EXTRACTION_MODEL,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": SYSTEM_INSTRUCTIONS},
            {
                "role": "user",
                "content": "Analyse le texte suivant, qui correspond à une facture, et convertis-le en JSON.\n"
                f"{invoice_text}",
            },
        ],
        max_tokens=MAX_COMPLETION_TOKENS,
    )
    return completion.choices[0].message.content or ""


def _request_invoice_from_image(image_b64: str, mime_type: str) -> str:
    data_url = f"data:{mime_type};base64,{image_b64}"
    completion = get_openai_client().chat.completions.create(
        model=INVOICE_VISION_MODEL,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": SYSTEM_INSTRUCTIONS},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Lis cette facture et convertis-la en JSON."},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            },
        ],
        max_tokens=MAX_COMPLETION_TOKENS,
    )
    return completion.choices[0].message.content or ""


def parse_ai_response(raw_response: str, *, raw_text: str = "") -> ParsedInvoice:
    """Turn the model's JSON answer into a :class:`ParsedInvoice`."""

    candidate = _extract_first_json_object(_strip_code_fences(raw_response))
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        preview = _preview_text(candidate)
        logger.warning("Invoice JSON parsing failed. preview=%s", preview)
        raise InvoiceExtractionError("Le format JSON renvoyé par l'IA est invalide. Aperçu: " + preview) from exc

    header_data = payload.get("header") if isinstance(payload.get("header"), dict) else {}
    header = InvoiceHeader(
        supplier_name=_clean_str(header_data.get("supplier_name")),
        supplier_tax_id=_clean_str(header_data.get("supplier_tax_id")),
        invoice_number=_clean_str(header_data.get("invoice_number")),
        invoice_date=_to_date(header_data.get("invoice_date")),
        total_without_tax=_to_float(header_data.get("total_without_tax")),
        total_tax=_to_float(header_data.get("total_tax")),
        total_with_tax=_to_float(header_data.get("total_with_tax")),
    )

    line_items: List[InvoiceLineItem] = []
    for entry in payload.get("line_items") or []:
        if not isinstance(entry, dict):
            continue
        description = _clean_str(entry.get("original_description"))
        if not description:
            continue
        line_items.append(
            InvoiceLineItem(
                line_number=len(line_items) + 1,
                original_description=description,
                clean_description=_clean_str(entry.get("clean_description")),
                quantity=_to_float(entry.get("quantity")),
                unit=_clean_str(entry.get("unit")),
                unit_price=_to_float(entry.get("unit_price")),
                line_total=_to_float(entry.get("line_total")),
                tax_rate=_to_float(entry.get("tax_rate")),
                tax_amount=_to_float(entry.get("tax_amount")),
                package=_to_package(entry.get("package")),
                computed_prices=_to_prices(entry.get("computed_prices")),
            )
        )

    return ParsedInvoice(header=header, line_items=line_items, raw_text=raw_text, method="ai")


def _to_package(value: Any) -> Optional[PackageInfo]:
    if not isinstance(value, dict):
        return None
    quantity = _to_float(value.get("quantity"))
    package_type = _clean_str(value.get("package_type"))
    unit = _clean_str(value.get("unit"))
    if not package_type or not unit or quantity is None or quantity <= 0:
        return None
    return PackageInfo(package_type=package_type.lower(), quantity=quantity, unit=unit)


def _to_prices(value: Any) -> Optional[ComputedPrices]:
    if not isinstance(value, dict):
        return None
    prices = ComputedPrices(
        per_kg=_to_float(value.get("per_kg")),
        per_liter=_to_float(value.get("per_liter")),
        per_unit=_to_float(value.get("per_unit")),
    )
    return None if prices.is_empty() else prices


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return parse_number(str(value))


def _to_date(value: Any) -> Optional[date]:
    text = _clean_str(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return parse_date(text)


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _strip_code_fences(raw_text: str) -> str:
    if not raw_text:
        raise InvoiceExtractionError("L'IA n'a renvoyé aucun contenu.")
    text = raw_text.strip()
    match = CODE_FENCE_PATTERN.search(text)
    if match:
        text = match.group(2).strip()
    if text.lower().startswith("json"):
        text = text[4:].lstrip()
    return text


def _extract_first_json_object(text: str) -> str:
    """Best-effort extraction of the first balanced JSON object in the text."""

    start = text.find("{")
    if start == -1:
        raise InvoiceExtractionError("Impossible de trouver un objet JSON dans la réponse de l'IA.")

    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]

    preview = _preview_text(text)
    logger.warning("Truncated invoice JSON detected. preview=%s", preview)
    raise InvoiceExtractionError("La réponse de l'IA semble tronquée : JSON incomplet. Aperçu: " + preview)


def _preview_text(text: str, limit: int = 280) -> str:
    safe = (text or "").replace("\n", " ").strip()
    if len(safe) <= limit:
        return safe
    return safe[: limit - 3] + "..."


__all__ = [
    "ExtractionUnavailableError",
    "InvoiceExtractionError",
    "extract_invoice_from_image",
    "extract_invoice_from_text",
    "is_unavailable_error",
    "parse_ai_response",
]
