"""Detect package sizes in invoice descriptions and derive base prices."""

from __future__ import annotations

import re
from typing import Optional, Tuple

from invoice_pipeline.schemas import ComputedPrices, InvoiceLineItem, PackageInfo

PACKAGE_TYPES = {
    "cx": "caixa",
    "caixa": "caixa",
    "sc": "saco",
    "saco": "saco",
    "emb": "embalagem",
    "embalagem": "embalagem",
    "gf": "garrafa",
    "grf": "garrafa",
    "garrafa": "garrafa",
    "pct": "pacote",
    "pacote": "pacote",
    "lata": "lata",
    "balde": "balde",
    "frasco": "frasco",
}

UNIT_ALIASES = {
    "kg": "kg",
    "kgs": "kg",
    "g": "g",
    "gr": "g",
    "grs": "g",
    "l": "L",
    "lt": "L",
    "lts": "L",
    "ml": "ml",
    "cl": "cl",
    "un": "un",
    "uni": "un",
    "unid": "un",
}

WEIGHT_PURCHASE_UNITS = {"KG", "KGS"}
VOLUME_PURCHASE_UNITS = {"L", "LT", "LTS", "LITRO", "LITROS"}

_NUMBER = r"(\d+(?:[.,]\d+)?)"
_UNITS = r"(kgs?|grs?|g|lts?|l|ml|cl|unid|uni|un)"
TYPED_PACKAGE_PATTERN = re.compile(
    r"\b(" + "|".join(sorted(PACKAGE_TYPES, key=len, reverse=True)) + r")\.?\s*" + _NUMBER + r"\s*" + _UNITS + r"\b",
    re.IGNORECASE,
)
BARE_SIZE_PATTERN = re.compile(r"\b" + _NUMBER + r"\s*(kgs?|grs?|g|lts?|l|ml|cl)\b", re.IGNORECASE)


def detect_package(description: str) -> Tuple[Optional[PackageInfo], str]:
    """Return the package found in ``description`` and the description without it."""

    if not description:
        return None, ""

    match = TYPED_PACKAGE_PATTERN.search(description)
    package_type: Optional[str] = None
    if match:
        package_type = PACKAGE_TYPES[match.group(1).lower()]
        raw_quantity, raw_unit = match.group(2), match.group(3)
    else:
        match = BARE_SIZE_PATTERN.search(description)
        if not match:
            return None, _collapse(description)
        package_type = "embalagem"
        raw_quantity, raw_unit = match.group(1), match.group(2)

    quantity = float(raw_quantity.replace(",", "."))
    if quantity <= 0:
        return None, _collapse(description)
    unit = UNIT_ALIASES[raw_unit.lower()]
    if unit == "cl":
        quantity, unit = quantity * 10, "ml"

    cleaned = description[: match.start()] + " " + description[match.end() :]
    return PackageInfo(package_type=package_type, quantity=quantity, unit=unit), _collapse(cleaned)


def compute_base_prices(
    unit_price: Optional[float],
    purchase_unit: Optional[str],
    package: Optional[PackageInfo],
) -> Optional[ComputedPrices]:
    """Express ``unit_price`` per kg, per liter or per unit."""

    if unit_price is None or unit_price <= 0:
        return None

    unit = (purchase_unit or "").strip().upper()
    prices = ComputedPrices()
    if unit in WEIGHT_PURCHASE_UNITS:
        prices.per_kg = _round(unit_price)
    elif unit in VOLUME_PURCHASE_UNITS:
        prices.per_liter = _round(unit_price)
    elif package is not None:
        if package.unit == "kg":
            prices.per_kg = _round(unit_price / package.quantity)
        elif package.unit == "g":
            prices.per_kg = _round(unit_price / (package.quantity / 1000))
        elif package.unit == "L":
            prices.per_liter = _round(unit_price / package.quantity)
        elif package.unit == "ml":
            prices.per_liter = _round(unit_price / (package.quantity / 1000))
        elif package.unit == "un":
            prices.per_unit = _round(unit_price / package.quantity)
    elif unit in ("UN", "UNI", "UNID"):
        prices.per_unit = _round(unit_price)

    return None if prices.is_empty() else prices


def enrich_line_item(item: InvoiceLineItem) -> InvoiceLineItem:
    """Fill package, clean description and base prices when the parser left them empty."""

    package, cleaned = detect_package(item.original_description)
    package = item.package or package
    updates = {
        "package": package,
        "clean_description": item.clean_description or cleaned or item.original_description,
    }
    if item.computed_prices is None or item.computed_prices.is_empty():
        updates["computed_prices"] = compute_base_prices(item.unit_price, item.unit, package)
    return item.model_copy(update=updates)


def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip(" -,.;/")


def _round(value: float) -> float:
    return round(value, 4)


__all__ = ["compute_base_prices", "detect_package", "enrich_line_item"]
