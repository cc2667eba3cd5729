"""Match invoice line descriptions against a tenant's product catalog."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any, Dict, List, Optional, Sequence

from rapidfuzz import fuzz, process

from invoice_pipeline.schemas import LineStatus, MatchResult, ProductMatch, SuggestedCategory

logger = logging.getLogger(__name__)

HISTORY_EXACT_CONFIDENCE = 95
HISTORY_FUZZY_CONFIDENCE = 85
EXACT_NAME_CONFIDENCE = 90
HISTORY_FUZZY_THRESHOLD = 88
FUZZY_ACCEPT_THRESHOLD = 60
AUTO_MATCH_THRESHOLD = 90
SUGGESTION_THRESHOLD = 45
MAX_ALTERNATE_SUGGESTIONS = 3
STRONG_SUGGESTION_SCORE = 80


def normalize_text(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(char for char in normalized if not unicodedata.combining(char)).lower()
    stripped = re.sub(r"[^a-z0-9\s]", " ", stripped)
    return re.sub(r"\s+", " ", stripped).strip()


class ProductMatcher:
    """Resolve a description to a catalog product.

    Sources are tried in order: confirmed matching history (exact then fuzzy),
    exact catalog name, fuzzy catalog name. ``products`` and ``history`` are
    the rows returned by the invoice repository for one tenant.
    """

    def __init__(
        self,
        products: Sequence[Dict[str, Any]],
        history: Sequence[Dict[str, Any]] = (),
    ) -> None:
        self.products: Dict[int, Dict[str, Any]] = {}
        self.choices: Dict[int, str] = {}
        self.names: Dict[str, int] = {}
        for row in products:
            identifier = row.get("id")
            name = (row.get("name") or "").strip()
            if identifier is None or not name or row.get("active") is False:
                continue
            product_id = int(identifier)
            self.products[product_id] = row
            normalized = normalize_text(name)
            self.choices[product_id] = normalized
            self.names.setdefault(normalized, product_id)
            code = normalize_text(row.get("internal_code") or "")
            if code:
                self.names.setdefault(code, product_id)
        self.history = list(history)

    def match(
        self,
        description: str,
        supplier_name: Optional[str] = None,
        *,
        history_key: Optional[str] = None,
    ) -> MatchResult:
        """Match a line description against confirmed history, then the catalog.

        ``history_key`` is the text confirmations were saved under (the raw
        invoice description); it defaults to ``description``.
        """

        normalized = normalize_text(description)
        if not normalized:
            return MatchResult(is_new=True)

        product = (
            self._history_match(normalize_text(history_key or description), supplier_name)
            or self._exact_match(normalized)
            or self._fuzzy_match(normalized)
        )
        suggestions = self._alternates(normalized, exclude=product.product_id if product else None)

        if product is not None:
            logger.debug("Matched '%s' to product %s (%s)", description, product.product_id, product.match_reason)
            return MatchResult(
                product=product,
                suggestions=suggestions,
                confidence=product.confidence,
                needs_review=product.confidence < AUTO_MATCH_THRESHOLD,
                is_new=False,
            )

        return MatchResult(
            product=None,
            suggestions=suggestions,
            confidence=0.0,
            needs_review=True,
            is_new=True,
            suggested_category=self._suggest_category(normalized),
        )

    def get_suggestions(self, description: str, limit: int = 10) -> List[ProductMatch]:
        """Catalog candidates for manual review, best first."""

        normalized = normalize_text(description)
        if not normalized or not self.choices:
            return []
        results = process.extract(
            normalized,
            self.choices,
            scorer=fuzz.WRatio,
            score_cutoff=FUZZY_ACCEPT_THRESHOLD,
            limit=limit,
        )
        return [
            self._product_match(
                product_id,
                score,
                "strong_match" if score >= STRONG_SUGGESTION_SCORE else "possible_match",
            )
            for _, score, product_id in results
        ]

    def _history_match(self, normalized: str, supplier_name: Optional[str]) -> Optional[ProductMatch]:
        entries = [
            entry
            for entry in self.history
            if not supplier_name or (entry.get("supplier_name") or "") == supplier_name
        ]
        if not entries:
            return None

        for entry in entries:
            if normalize_text(entry.get("invoice_description") or "") == normalized:
                return self._history_product(entry, HISTORY_EXACT_CONFIDENCE, "history_exact")

        choices = {index: normalize_text(entry.get("invoice_description") or "") for index, entry in enumerate(entries)}
        best = process.extractOne(
            normalized,
            choices,
            scorer=fuzz.token_sort_ratio,
            score_cutoff=HISTORY_FUZZY_THRESHOLD,
        )
        if best is None:
            return None
        return self._history_product(entries[best[2]], HISTORY_FUZZY_CONFIDENCE, "history_fuzzy")

    def _exact_match(self, normalized: str) -> Optional[ProductMatch]:
        product_id = self.names.get(normalized)
        if product_id is None:
            return None
        return self._product_match(product_id, EXACT_NAME_CONFIDENCE, "exact_name")

    def _fuzzy_match(self, normalized: str) -> Optional[ProductMatch]:
        if not self.choices:
            return None
        best = process.extractOne(
            normalized,
            self.choices,
            scorer=fuzz.WRatio,
            score_cutoff=FUZZY_ACCEPT_THRESHOLD,
        )
        if best is None:
            return None
        _, score, product_id = best
        return self._product_match(product_id, score, f"fuzzy_name ({score:.0f})")

    def _alternates(self, normalized: str, exclude: Optional[int]) -> List[ProductMatch]:
        if not self.choices:
            return []
        results = process.extract(
            normalized,
            self.choices,
            scorer=fuzz.WRatio,
            score_cutoff=SUGGESTION_THRESHOLD,
            limit=MAX_ALTERNATE_SUGGESTIONS + 1,
        )
        suggestions = [
            self._product_match(product_id, score, "suggestion")
            for _, score, product_id in results
            if product_id != exclude
        ]
        return suggestions[:MAX_ALTERNATE_SUGGESTIONS]

    def _suggest_category(self, normalized: str) -> Optional[SuggestedCategory]:
        if not self.choices:
            return None
        best = process.extractOne(normalized, self.choices, scorer=fuzz.WRatio)
        if best is None:
            return None
        row = self.products[best[2]]
        if row.get("family_id") is None:
            return None
        return SuggestedCategory(family_id=int(row["family_id"]), subfamily_id=row.get("subfamily_id"))

    def _history_product(self, entry: Dict[str, Any], confidence: float, reason: str) -> ProductMatch:
        product_id = int(entry["product_id"])
        row = self.products.get(product_id, {})
        return ProductMatch(
            product_id=product_id,
            product_name=row.get("name") or entry.get("product_name") or "",
            variation_id=entry.get("variation_id"),
            confidence=confidence,
            match_reason=reason,
        )

    def _product_match(self, product_id: int, score: float, reason: str) -> ProductMatch:
        return ProductMatch(
            product_id=product_id,
            product_name=self.products[product_id]["name"],
            confidence=round(float(score), 2),
            match_reason=reason,
        )


def line_status_for(result: MatchResult) -> LineStatus:
    if result.product is None:
        return "new_product"
    if result.confidence >= AUTO_MATCH_THRESHOLD:
        return "matched"
    return "manual_review"


__all__ = ["ProductMatcher", "line_status_for", "normalize_text"]
