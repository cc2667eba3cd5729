"""Rule-based extraction of invoice header and line items from raw text."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import List, Optional

from invoice_pipeline.schemas import InvoiceHeader, InvoiceLineItem, ParsedInvoice

logger = logging.getLogger(__name__)

_UPPER = "A-ZÀÁÂÃÄÅÆÇÈÉÊËÌÍÎÏÐÑÒÓÔÕÖØÙÚÛÜÝ"

SUPPLIER_PATTERNS = (
    re.compile(rf"^([{_UPPER} \t&.,\-]+)$", re.MULTILINE),
    re.compile(r"Fornecedor[:\s]+([^\n]+)", re.IGNORECASE),
    re.compile(r"Supplier[:\s]+([^\n]+)", re.IGNORECASE),
)
TAX_ID_PATTERNS = (
    re.compile(r"NIF[:\s]+(\d{9})", re.IGNORECASE),
    re.compile(r"NIPC[:\s]+(\d{9})", re.IGNORECASE),
    re.compile(r"Contribuinte[:\s]+(\d{9})", re.IGNORECASE),
)
INVOICE_NUMBER_PATTERNS = (
    re.compile(r"Fatura[:\s]+([A-Z0-9/\-]+)", re.IGNORECASE),
    re.compile(r"Invoice[:\s]+([A-Z0-9/\-]+)", re.IGNORECASE),
    re.compile(r"N[º°.]\s*([A-Z0-9/\-]+)", re.IGNORECASE),
)
DATE_PATTERNS = (
    re.compile(r"Data[:\s]+(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})", re.IGNORECASE),
    re.compile(r"Date[:\s]+(\d{1,2}[-/]\d{1,2}[-/]\d{2,4})", re.IGNORECASE),
    re.compile(r"(\d{1,2}[-/]\d{1,2}[-/]\d{4})"),
)
NET_TOTAL_PATTERNS = (
    re.compile(r"Total\s+s/\s*IVA[:\s]+([\d.,]+)", re.IGNORECASE),
    re.compile(r"Total\s+sem\s+IVA[:\s]+([\d.,]+)", re.IGNORECASE),
    re.compile(r"Subtotal[:\s]+([\d.,]+)", re.IGNORECASE),
)
TAX_TOTAL_PATTERNS = (
    re.compile(r"Total\s+IVA[:\s]+([\d.,]+)", re.IGNORECASE),
    re.compile(r"\bIVA[:\s]+([\d.,]+)", re.IGNORECASE),
)
GROSS_TOTAL_PATTERNS = (
    re.compile(r"Total\s+c/\s*IVA[:\s]+([\d.,]+)", re.IGNORECASE),
    re.compile(r"Total\s+com\s+IVA[:\s]+([\d.,]+)", re.IGNORECASE),
    re.compile(r"Total\s+Geral[:\s]+([\d.,]+)", re.IGNORECASE),
    re.compile(r"Total[:\s]+([\d.,]+)\s*€", re.IGNORECASE),
)

HEADER_KEYWORDS = re.compile(
    r"\b(descrição|descricao|description|quantidade|quantity|preço|preco|price|total|iva|vat|artigo|"
    r"produto|product|página|pagina|page|lote|unid|desc|valor)\b",
    re.IGNORECASE,
)
ADMIN_LINE = re.compile(
    r"^(fatura|factura|invoice|data|date|fornecedor|supplier|cliente|customer|n[º°.])\b",
    re.IGNORECASE,
)
CONTACT_PATTERNS = (
    re.compile(r"tel[.:]", re.IGNORECASE),
    re.compile(r"fax[.:]", re.IGNORECASE),
    re.compile(r"e-?mail", re.IGNORECASE),
    re.compile(r"@"),
    re.compile(r"www\.", re.IGNORECASE),
    re.compile(r"http", re.IGNORECASE),
    re.compile(r"sede[.:]", re.IGNORECASE),
    re.compile(r"morada|endereço|address", re.IGNORECASE),
    re.compile(r"nipc|nif[.:]|iban", re.IGNORECASE),
    re.compile(r"zona\s+industrial", re.IGNORECASE),
    re.compile(r"//"),
)
INVALID_DESCRIPTION_PATTERNS = (
    re.compile(r"^(tel|fax|email|sede|nipc|nif|iban)", re.IGNORECASE),
    re.compile(r"^\d{9}$"),
    re.compile(r"@"),
    re.compile(r"www\.", re.IGNORECASE),
)
AMOUNT_TOKEN = re.compile(r"€?(\d[\d.,]*)€?")
PERCENT_TOKEN = re.compile(r"(\d+(?:[.,]\d+)?)%")
UNIT_TOKEN = re.compile(r"(kg|kgs|un|uni|cx|l|lt|ml|g|emb|gfo|bil|tb|litro|litros)", re.IGNORECASE)
ITEM_CODE_TOKEN = re.compile(r"[A-Z]{0,3}\d{3,}", re.IGNORECASE)
ISO_DATE_LINE = re.compile(r"^\d{4}-\d{2}-\d{2}")
EU_DATE_LINE = re.compile(r"^\d{2}[-/]\d{2}[-/]\d{4}")
SHORT_LABEL = re.compile(r"^[A-Z]{2,10}$")
HAS_LETTER = re.compile(rf"[{_UPPER}]", re.IGNORECASE)


class InvoiceParsingError(ValueError):
    """Raised when no usable invoice data can be extracted."""


def parse_invoice_text(text: str) -> ParsedInvoice:
    """Parse raw invoice text into a header and ordered line items."""

    if not text or not text.strip():
        raise InvoiceParsingError("Le texte de la facture est vide.")
    header = extract_header(text)
    line_items = extract_line_items(text)
    logger.debug("Rule parser extracted %s line(s), supplier=%s", len(line_items), header.supplier_name)
    return ParsedInvoice(header=header, line_items=line_items, raw_text=text, method="rules")


def extract_header(text: str) -> InvoiceHeader:
    header = InvoiceHeader()

    for pattern in SUPPLIER_PATTERNS:
        match = pattern.search(text)
        if match and len(match.group(1).strip()) > 3:
            header.supplier_name = match.group(1).strip()
            break

    header.supplier_tax_id = _first_group(TAX_ID_PATTERNS, text)
    header.invoice_number = _first_group(INVOICE_NUMBER_PATTERNS, text)

    raw_date = _first_group(DATE_PATTERNS, text)
    if raw_date:
        header.invoice_date = parse_date(raw_date)

    header.total_without_tax = _first_number(NET_TOTAL_PATTERNS, text)
    header.total_tax = _first_number(TAX_TOTAL_PATTERNS, text)
    header.total_with_tax = _first_number(GROSS_TOTAL_PATTERNS, text)
    return header


def extract_line_items(text: str) -> List[InvoiceLineItem]:
    items: List[InvoiceLineItem] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or is_non_product_line(line):
            continue
        item = parse_line_item(line, len(items) + 1)
        if item is not None:
            items.append(item)
    return items


def is_non_product_line(line: str) -> bool:
    """True for table headers, administrative lines, contact details, dates and short labels."""

    if HEADER_KEYWORDS.search(line) or ADMIN_LINE.match(line):
        return True
    if any(pattern.search(line) for pattern in CONTACT_PATTERNS):
        return True
    if ISO_DATE_LINE.match(line) or EU_DATE_LINE.match(line):
        return True
    if len(line) < 5:
        return True
    return bool(SHORT_LABEL.match(line))


def parse_line_item(line: str, line_number: int) -> Optional[InvoiceLineItem]:
    """Split a product row into description and its trailing amount columns.

    Amounts are read from the right so that sizes embedded in the description
    (``AZEITE 5L``) stay part of it. Expected column order is quantity, unit
    price, line total; a single trailing amount is taken as the line total.
    """

    tokens = line.split()
    amounts: List[str] = []
    unit: Optional[str] = None
    tax_rate: Optional[float] = None
    index = len(tokens)
    while index > 0:
        token = tokens[index - 1]
        amount = AMOUNT_TOKEN.fullmatch(token)
        if amount:
            amounts.insert(0, amount.group(1))
        elif PERCENT_TOKEN.fullmatch(token) and tax_rate is None:
            tax_rate = parse_number(PERCENT_TOKEN.fullmatch(token).group(1))
        elif UNIT_TOKEN.fullmatch(token) and amounts and unit is None:
            unit = token.upper()
        else:
            break
        index -= 1

    if not amounts:
        return None

    description_tokens = tokens[:index]
    if len(description_tokens) > 1 and ITEM_CODE_TOKEN.fullmatch(description_tokens[0]):
        description_tokens = description_tokens[1:]
    description = " ".join(description_tokens).strip()
    if len(description) < 3 or not HAS_LETTER.search(description):
        return None
    if any(pattern.search(description) for pattern in INVALID_DESCRIPTION_PATTERNS):
        return None

    values = [parse_number(value) for value in amounts]
    quantity = unit_price = line_total = None
    if len(values) >= 3:
        quantity, unit_price, line_total = values[-3:]
    elif len(values) == 2:
        quantity, line_total = values
    else:
        line_total = values[0]

    if unit is None:
        unit = _extract_unit(description)

    return InvoiceLineItem(
        line_number=line_number,
        original_description=description,
        quantity=quantity,
        unit=unit,
        unit_price=unit_price,
        line_total=line_total,
        tax_rate=tax_rate,
    )


def parse_number(value: str) -> Optional[float]:
    """Parse European (1.234,56) and US (1,234.56) formatted amounts."""

    cleaned = (value or "").strip().strip("€").rstrip(".,")
    if not cleaned:
        return None
    last_comma = cleaned.rfind(",")
    last_dot = cleaned.rfind(".")
    if last_comma > last_dot:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_date(value: str) -> Optional[date]:
    """Parse DD/MM/YYYY, DD-MM-YY and similar day-first dates."""

    parts = re.split(r"[-/]", value.strip())
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(part) for part in parts)
    except ValueError:
        return None
    if year < 100:
        year += 2000
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _first_group(patterns, text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def _first_number(patterns, text: str) -> Optional[float]:
    raw = _first_group(patterns, text)
    return parse_number(raw) if raw else None


def _extract_unit(description: str) -> Optional[str]:
    for token in description.split():
        if UNIT_TOKEN.fullmatch(token):
            return token.upper()
    return None


__all__ = [
    "InvoiceParsingError",
    "extract_header",
    "extract_line_items",
    "is_non_product_line",
    "parse_date",
    "parse_invoice_text",
    "parse_line_item",
    "parse_number",
]
