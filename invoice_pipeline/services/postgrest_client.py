"""PostgREST client factory and Supabase error mapping for the invoice tables."""

from __future__ import annotations

import logging
from typing import Dict, NoReturn, Optional, Tuple

from fastapi import HTTPException
from httpx import HTTPError as HttpxError
from postgrest import APIError as PostgrestAPIError
from postgrest import SyncPostgrestClient

from invoice_pipeline.config import supabase_client

logger = logging.getLogger(__name__)

DEFAULT_ERROR_DETAIL = "Erreur lors de la communication avec Supabase."

# SQLSTATE / PostgREST codes worth a dedicated answer.
ERROR_CODE_MAP: Dict[str, Tuple[int, str]] = {
    "23505": (409, "Cet enregistrement existe déjà."),
    "23503": (400, "Référence invalide (produit ou facture inexistant)."),
    "23502": (400, "Champ obligatoire manquant."),
    "22P02": (400, "Valeur invalide."),
    "42501": (403, "Accès refusé à la ressource demandée."),
    "PGRST116": (404, "Ressource introuvable."),
    "PGRST301": (401, "Authentification Supabase requise."),
}

STATUS_DETAILS: Dict[int, str] = {
    401: "Authentification Supabase requise.",
    403: "Accès refusé à la ressource demandée.",
    404: "Ressource introuvable.",
}


def extract_bearer_token(header_value: Optional[str]) -> str:
    if not header_value:
        raise HTTPException(status_code=401, detail="Authentification requise.")
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or " " in token.strip():
        raise HTTPException(status_code=401, detail="Jeton Bearer invalide.")
    if not token.strip():
        raise HTTPException(status_code=401, detail="Jeton Bearer manquant.")
    return token.strip()


def rest_endpoint() -> str:
    if not supabase_client.SUPABASE_URL:
        raise HTTPException(status_code=500, detail="Supabase n'est pas configuré.")
    return f"{supabase_client.SUPABASE_URL.rstrip('/')}/rest/v1"


def create_postgrest_client(
    access_token: str,
    *,
    prefer: Optional[str] = None,
    api_key: Optional[str] = None,
) -> SyncPostgrestClient:
    """PostgREST client acting with ``access_token`` (a user JWT or the service role key)."""

    resolved_api_key = api_key or supabase_client.SUPABASE_ANON_KEY
    if not resolved_api_key:
        raise HTTPException(status_code=500, detail="Supabase n'est pas configuré.")

    headers: Dict[str, str] = {"apikey": resolved_api_key, "Accept": "application/json"}
    if prefer:
        headers["Prefer"] = prefer

    client = SyncPostgrestClient(rest_endpoint(), headers=headers)
    client.auth(access_token)
    return client


def raise_postgrest_error(exc: PostgrestAPIError, *, context: str) -> NoReturn:
    """Translate a PostgREST error into an HTTP error for the caller."""

    code = str(exc.code or "")
    detail = exc.message or DEFAULT_ERROR_DETAIL
    logger.error("%s failed (code %s): %s", context, code or "?", detail)
    if code in ERROR_CODE_MAP:
        status_code, message = ERROR_CODE_MAP[code]
        raise HTTPException(status_code=status_code, detail=message) from exc
    status_code = postgrest_status(exc)
    raise HTTPException(status_code=status_code, detail=STATUS_DETAILS.get(status_code, DEFAULT_ERROR_DETAIL)) from exc


def raise_supabase_unreachable(exc: HttpxError, *, context: str) -> NoReturn:
    logger.error("Supabase unreachable during %s: %s", context, exc)
    raise HTTPException(status_code=503, detail="Supabase est temporairement inaccessible.") from exc


def postgrest_status(exc: PostgrestAPIError) -> int:
    """HTTP status carried by the error code, 502 when there is none."""

    try:
        status_code = int(exc.code) if exc.code else 502
    except (TypeError, ValueError):
        return 502
    return status_code if status_code in STATUS_DETAILS else 502


__all__ = [
    "create_postgrest_client",
    "extract_bearer_token",
    "postgrest_status",
    "raise_postgrest_error",
    "raise_supabase_unreachable",
    "rest_endpoint",
]
