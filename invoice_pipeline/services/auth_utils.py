"""Read the claims of the Supabase access token forwarded by the client."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional

from fastapi import HTTPException


def decode_access_token(access_token: str) -> Dict[str, Any]:
    """Return the decoded (unverified) JWT payload of a Supabase access token."""

    if not access_token:
        raise HTTPException(status_code=401, detail="Authentification requise.")

    try:
        payload_segment = access_token.split(".")[1]
        padding = "=" * (-len(payload_segment) % 4)
        decoded = base64.urlsafe_b64decode((payload_segment + padding).encode("ascii"))
        claims = json.loads(decoded.decode("utf-8"))
    except (IndexError, binascii.Error, UnicodeError, ValueError) as exc:
        raise HTTPException(status_code=401, detail="Jeton d'authentification invalide.") from exc
    if not isinstance(claims, dict):
        raise HTTPException(status_code=401, detail="Jeton d'authentification invalide.")
    return claims


def token_user_id(access_token: str) -> Optional[str]:
    subject = decode_access_token(access_token).get("sub")
    return str(subject) if subject else None


__all__ = ["decode_access_token", "token_user_id"]
