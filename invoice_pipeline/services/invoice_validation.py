"""Format and arithmetic checks on a parsed invoice.

Errors flag data that is almost certainly wrong (missing prices, totals that do
not add up); warnings flag values a reviewer should double check (implied
discounts, unusual VAT rates). Validation never raises: the processing worker
stores the messages on the invoice and leaves the decision to the reviewer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from invoice_pipeline.schemas import InvoiceLineItem, ParsedInvoice

VALID_TAX_RATES = (0.0, 0.06, 0.13, 0.23)
TAX_RATE_TOLERANCE = 0.02
MAX_QUANTITY = 10000
MAX_UNIT_PRICE = 100000
MIN_DESCRIPTION_LENGTH = 3
MATH_TOLERANCE = 0.02
MIN_LINE_SUM_TOLERANCE = 2.0
LINE_SUM_TOLERANCE_RATIO = 0.01
SMALL_DISCREPANCY = 0.05
DISCOUNT_RATIO_RANGE = (0.70, 0.95)

PHONE_NUMBER_PATTERN = re.compile(r"^\d{9,15}$")
SUSPICIOUS_DESCRIPTION_PATTERNS = (
    re.compile(r"^\s*inf\s*$", re.IGNORECASE),
    re.compile(r"^\s*tel\s*$", re.IGNORECASE),
    re.compile(r"devolu[çs][ãa]o", re.IGNORECASE),
    re.compile(r"telef[oó]nicos", re.IGNORECASE),
)


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def extend(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def validate_line_item(item: InvoiceLineItem, index: int) -> ValidationResult:
    result = ValidationResult()
    description = (item.original_description or "").strip()

    if len(description) < MIN_DESCRIPTION_LENGTH:
        result.errors.append(f"Ligne {index} : description trop courte (\"{description}\")")
    elif PHONE_NUMBER_PATTERN.match(description):
        result.errors.append(f"Ligne {index} : la description ressemble à un numéro de téléphone")
    elif any(pattern.search(description) for pattern in SUSPICIOUS_DESCRIPTION_PATTERNS):
        result.errors.append(f"Ligne {index} : description suspecte (\"{description}\")")

    if item.unit_price is None:
        result.errors.append(f"Ligne {index} : prix manquant")
    elif item.unit_price <= 0:
        result.errors.append(f"Ligne {index} : prix invalide ({item.unit_price})")
    elif item.unit_price > MAX_UNIT_PRICE:
        result.warnings.append(f"Ligne {index} : prix très élevé ({item.unit_price} €), à vérifier")

    if item.quantity is None:
        result.errors.append(f"Ligne {index} : quantité manquante")
    elif item.quantity <= 0:
        result.errors.append(f"Ligne {index} : quantité invalide ({item.quantity})")
    elif item.quantity > MAX_QUANTITY:
        result.warnings.append(f"Ligne {index} : quantité très élevée ({item.quantity}), à vérifier")

    if item.line_total is not None and item.unit_price and item.quantity:
        expected = item.unit_price * item.quantity
        if abs(expected - item.line_total) > MATH_TOLERANCE:
            ratio = item.line_total / expected
            low, high = DISCOUNT_RATIO_RANGE
            if low <= ratio <= high:
                result.warnings.append(
                    f"Ligne {index} : remise probable (~{(1 - ratio) * 100:.1f} %) : "
                    f"{item.quantity} × {item.unit_price} = {expected:.2f} mais total {item.line_total:.2f}"
                )
            else:
                result.errors.append(
                    f"Ligne {index} : total incohérent : "
                    f"{item.quantity} × {item.unit_price} = {expected:.2f} mais total {item.line_total:.2f}"
                )
    return result


def validate_math(invoice: ParsedInvoice) -> ValidationResult:
    result = ValidationResult()
    header = invoice.header
    items = invoice.line_items
    if not items:
        return result

    net_total = header.total_without_tax
    if net_total is not None:
        tolerance = max(MIN_LINE_SUM_TOLERANCE, net_total * LINE_SUM_TOLERANCE_RATIO)
        line_sum = sum(item.line_total or 0 for item in items)
        diff = abs(line_sum - net_total)
        if diff > tolerance:
            result.errors.append(
                f"La somme des lignes ({line_sum:.2f} €) diffère du total HT ({net_total:.2f} €) "
                f"de {diff:.2f} € (tolérance : {tolerance:.2f} €)"
            )
        elif diff > SMALL_DISCREPANCY:
            result.warnings.append(f"Petit écart sur la somme des lignes : {diff:.2f} € (tolérance : {tolerance:.2f} €)")

    if header.total_without_tax is not None and header.total_tax is not None and header.total_with_tax is not None:
        computed = header.total_without_tax + header.total_tax
        diff = abs(computed - header.total_with_tax)
        if diff > MATH_TOLERANCE:
            result.errors.append(
                f"Total HT ({header.total_without_tax:.2f} €) + TVA ({header.total_tax:.2f} €) = {computed:.2f} € "
                f"mais total TTC {header.total_with_tax:.2f} € (écart : {diff:.2f} €)"
            )

    if header.total_with_tax is not None:
        largest_line = max((item.unit_price or 0) * (item.quantity or 0) for item in items)
        if header.total_with_tax < largest_line - 0.01:
            result.errors.append(
                f"Le total TTC ({header.total_with_tax:.2f} €) est inférieur à la plus grande ligne ({largest_line:.2f} €)"
            )
        if header.total_with_tax <= 0:
            result.errors.append(f"Le total TTC doit être positif (reçu {header.total_with_tax} €)")

    if header.total_tax and header.total_without_tax:
        rate = header.total_tax / header.total_without_tax
        if not any(abs(rate - valid) < TAX_RATE_TOLERANCE for valid in VALID_TAX_RATES):
            expected = ", ".join(f"{int(valid * 100)} %" for valid in VALID_TAX_RATES)
            result.warnings.append(f"Taux de TVA inhabituel : {rate * 100:.1f} % (attendu : {expected})")

    return result


def validate_invoice(invoice: ParsedInvoice) -> ValidationResult:
    """Run every line check followed by the header arithmetic checks."""

    result = ValidationResult()
    for index, item in enumerate(invoice.line_items, start=1):
        result.extend(validate_line_item(item, index))
    result.extend(validate_math(invoice))
    return result


__all__ = ["ValidationResult", "validate_invoice", "validate_line_item", "validate_math"]
