"""Request dependencies shared by the invoice and queue routers."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from invoice_pipeline.config.redis_client import get_redis_connection
from invoice_pipeline.queues.invoice_queues import InvoiceQueues, create_invoice_queues
from invoice_pipeline.services.auth_utils import token_user_id
from invoice_pipeline.services.invoice_repository import SupabaseInvoiceDAO, resolve_postgrest_credentials
from invoice_pipeline.services.postgrest_client import extract_bearer_token


async def get_current_tenant_id(
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
) -> int:
    """Resolve the tenant identifier from the current request."""

    if not x_tenant_id:
        raise HTTPException(status_code=401, detail="Tenant non authentifié.")
    try:
        return int(x_tenant_id)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Identifiant tenant invalide.") from exc


async def get_access_token(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> str:
    """Extract the Supabase bearer token from the Authorization header."""

    return extract_bearer_token(authorization)


async def get_current_user_id(access_token: str = Depends(get_access_token)) -> Optional[str]:
    return token_user_id(access_token)


async def get_invoice_dao(
    tenant_id: int = Depends(get_current_tenant_id),
    access_token: str = Depends(get_access_token),
) -> SupabaseInvoiceDAO:
    db_token, api_key = resolve_postgrest_credentials(access_token)
    return SupabaseInvoiceDAO(tenant_id, db_token, api_key=api_key)


@lru_cache(maxsize=1)
def get_invoice_queues() -> InvoiceQueues:
    return create_invoice_queues(get_redis_connection())


__all__ = [
    "get_access_token",
    "get_current_tenant_id",
    "get_current_user_id",
    "get_invoice_dao",
    "get_invoice_queues",
]
