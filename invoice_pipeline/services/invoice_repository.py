"""Supabase/PostgREST persistence for invoice imports and their lines."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from fastapi import HTTPException
from httpx import HTTPError as HttpxError
from postgrest import APIError as PostgrestAPIError

from invoice_pipeline.config.supabase_client import SUPABASE_SERVICE_ROLE_KEY
from invoice_pipeline.services.postgrest_client import (
    create_postgrest_client,
    raise_postgrest_error,
    raise_supabase_unreachable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

INVOICES_TABLE = "invoice_imports"
LINES_TABLE = "invoice_import_lines"
PRODUCTS_TABLE = "products"
HISTORY_TABLE = "matching_history"
PROCESSING_METRICS_TABLE = "invoice_processing_metrics"
WORKER_METRICS_TABLE = "worker_metrics"

PRODUCT_COLUMNS = "id,name,internal_code,family_id,subfamily_id,active"
HISTORY_COLUMNS = "id,invoice_description,supplier_name,product_id,variation_id,created_at"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SupabaseInvoiceDAO:
    """Tenant-scoped access to the invoice import tables."""

    def __init__(
        self,
        tenant_id: int,
        access_token: str,
        *,
        api_key: Optional[str] = None,
    ):
        self.tenant_id = tenant_id
        self.access_token = access_token
        self.api_key = api_key

    def _client(self, *, prefer: Optional[str] = None):
        return create_postgrest_client(self.access_token, prefer=prefer, api_key=self.api_key)

    async def _run(self, request: Callable[[], T], *, context: str) -> T:
        try:
            return await asyncio.to_thread(request)
        except PostgrestAPIError as exc:  # pragma: no cover - network interaction
            raise_postgrest_error(exc, context=context)
        except HttpxError as exc:  # pragma: no cover - network interaction
            raise_supabase_unreachable(exc, context=context)

    async def create_invoice(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = {**payload, "tenant_id": self.tenant_id, "status": payload.get("status") or "pending"}

        def _request() -> Dict[str, Any]:
            with self._client(prefer="return=representation") as client:
                response = client.table(INVOICES_TABLE).insert(record).execute()
                if not response.data:
                    raise HTTPException(status_code=500, detail="Création de la facture impossible.")
                return response.data[0]

        return await self._run(_request, context="invoice creation")

    async def fetch_invoice(self, invoice_id: int) -> Optional[Dict[str, Any]]:
        def _request() -> Optional[Dict[str, Any]]:
            with self._client() as client:
                response = (
                    client.table(INVOICES_TABLE)
                    .select("*")
                    .eq("id", invoice_id)
                    .eq("tenant_id", self.tenant_id)
                    .limit(1)
                    .execute()
                )
                rows = response.data or []
                return rows[0] if rows else None

        return await self._run(_request, context="fetch invoice")

    async def update_invoice(self, invoice_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        def _request() -> Optional[Dict[str, Any]]:
            with self._client(prefer="return=representation") as client:
                response = (
                    client.table(INVOICES_TABLE)
                    .update(changes)
                    .eq("id", invoice_id)
                    .eq("tenant_id", self.tenant_id)
                    .execute()
                )
                rows = response.data or []
                return rows[0] if rows else None

        return await self._run(_request, context="invoice update")

    async def fetch_recently_processed(self, since: datetime) -> List[Dict[str, Any]]:
        """Invoices that reached ``reviewing`` or ``error`` after ``since``."""

        boundary = since.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

        def _request() -> List[Dict[str, Any]]:
            with self._client() as client:
                response = (
                    client.table(INVOICES_TABLE)
                    .select("id,status,file_name,supplier_name,invoice_number,error_message,processed_at")
                    .eq("tenant_id", self.tenant_id)
                    .in_("status", ["reviewing", "error"])
                    .gte("processed_at", boundary)
                    .order("processed_at", desc=True)
                    .execute()
                )
                return response.data or []

        return await self._run(_request, context="fetch pending status")

    async def replace_invoice_lines(self, invoice_id: int, lines: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Drop the lines of a previous attempt and store ``lines``."""

        records = [{**line, "invoice_import_id": invoice_id, "tenant_id": self.tenant_id} for line in lines]

        def _request() -> List[Dict[str, Any]]:
            with self._client(prefer="return=representation") as client:
                (
                    client.table(LINES_TABLE)
                    .delete()
                    .eq("invoice_import_id", invoice_id)
                    .eq("tenant_id", self.tenant_id)
                    .execute()
                )
                if not records:
                    return []
                response = client.table(LINES_TABLE).insert(records).execute()
                return response.data or []

        return await self._run(_request, context="invoice lines replace")

    async def fetch_invoice_lines(self, invoice_id: int) -> List[Dict[str, Any]]:
        def _request() -> List[Dict[str, Any]]:
            with self._client() as client:
                response = (
                    client.table(LINES_TABLE)
                    .select("*")
                    .eq("invoice_import_id", invoice_id)
                    .eq("tenant_id", self.tenant_id)
                    .order("line_number")
                    .execute()
                )
                return response.data or []

        return await self._run(_request, context="fetch invoice lines")

    async def fetch_invoice_line(self, invoice_id: int, line_id: int) -> Optional[Dict[str, Any]]:
        def _request() -> Optional[Dict[str, Any]]:
            with self._client() as client:
                response = (
                    client.table(LINES_TABLE)
                    .select("*")
                    .eq("id", line_id)
                    .eq("invoice_import_id", invoice_id)
                    .eq("tenant_id", self.tenant_id)
                    .limit(1)
                    .execute()
                )
                rows = response.data or []
                return rows[0] if rows else None

        return await self._run(_request, context="fetch invoice line")

    async def update_line(self, invoice_id: int, line_id: int, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        def _request() -> Optional[Dict[str, Any]]:
            with self._client(prefer="return=representation") as client:
                response = (
                    client.table(LINES_TABLE)
                    .update(changes)
                    .eq("id", line_id)
                    .eq("invoice_import_id", invoice_id)
                    .eq("tenant_id", self.tenant_id)
                    .execute()
                )
                rows = response.data or []
                return rows[0] if rows else None

        return await self._run(_request, context="invoice line update")

    async def fetch_products(self) -> List[Dict[str, Any]]:
        """Active catalog products of the tenant."""

        def _request() -> List[Dict[str, Any]]:
            with self._client() as client:
                response = (
                    client.table(PRODUCTS_TABLE)
                    .select(PRODUCT_COLUMNS)
                    .eq("tenant_id", self.tenant_id)
                    .eq("active", True)
                    .order("id", desc=True)
                    .execute()
                )
                return response.data or []

        return await self._run(_request, context="fetch products")

    async def fetch_match_history(self, supplier_name: Optional[str] = None) -> List[Dict[str, Any]]:
        def _request() -> List[Dict[str, Any]]:
            with self._client() as client:
                query = client.table(HISTORY_TABLE).select(HISTORY_COLUMNS).eq("tenant_id", self.tenant_id)
                if supplier_name:
                    query = query.eq("supplier_name", supplier_name)
                response = query.order("created_at", desc=True).execute()
                return response.data or []

        return await self._run(_request, context="fetch matching history")

    async def save_match_history(
        self,
        *,
        invoice_description: str,
        product_id: int,
        variation_id: Optional[int] = None,
        supplier_name: Optional[str] = None,
        initial_confidence: Optional[float] = None,
        confirmed_by: Optional[str] = None,
    ) -> None:
        record = {
            "tenant_id": self.tenant_id,
            "invoice_description": invoice_description,
            "supplier_name": supplier_name,
            "product_id": product_id,
            "variation_id": variation_id,
            "initial_confidence": initial_confidence,
            "confirmed_by": confirmed_by,
        }

        def _request() -> None:
            with self._client() as client:
                client.table(HISTORY_TABLE).insert(record).execute()

        await self._run(_request, context="matching history insert")

    async def record_processing_metrics(self, payload: Dict[str, Any]) -> None:
        await self._record_metric(PROCESSING_METRICS_TABLE, {**payload, "tenant_id": self.tenant_id})

    async def record_worker_metric(self, payload: Dict[str, Any]) -> None:
        await self._record_metric(WORKER_METRICS_TABLE, payload)

    async def _record_metric(self, table: str, record: Dict[str, Any]) -> None:
        record = {"created_at": utc_now_iso(), **record}

        def _request() -> None:
            with self._client() as client:
                client.table(table).insert(record).execute()

        try:
            await asyncio.to_thread(_request)
        except (PostgrestAPIError, HttpxError) as exc:  # pragma: no cover - network interaction
            logger.warning("Failed to record %s row: %s", table, exc)


def create_worker_dao(tenant_id: int) -> SupabaseInvoiceDAO:
    """DAO for background workers, authenticated with the service role key."""

    if not SUPABASE_SERVICE_ROLE_KEY:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY manquante dans le fichier .env")
    return SupabaseInvoiceDAO(tenant_id, SUPABASE_SERVICE_ROLE_KEY, api_key=SUPABASE_SERVICE_ROLE_KEY)


def resolve_postgrest_credentials(access_token: str) -> tuple[str, Optional[str]]:
    """Return the token/api key pair to use with PostgREST."""

    if SUPABASE_SERVICE_ROLE_KEY:
        return SUPABASE_SERVICE_ROLE_KEY, SUPABASE_SERVICE_ROLE_KEY
    return access_token, None


__all__ = [
    "SupabaseInvoiceDAO",
    "create_worker_dao",
    "resolve_postgrest_credentials",
    "utc_now_iso",
]
