"""Per-client throttling of the invoice upload endpoint."""

from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from typing import DefaultDict, Deque, Optional

from fastapi import HTTPException, Request

_WINDOW_LOCK = threading.Lock()
_WINDOWS: DefaultDict[str, Deque[float]] = defaultdict(deque)


def client_key(request: Request, tenant_id: Optional[int] = None) -> str:
    """Tenant plus caller address (first X-Forwarded-For hop when proxied)."""

    address = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not address and request.client:
        address = request.client.host or ""
    address = address or "unknown"
    return f"{tenant_id}@{address}" if tenant_id is not None else address


def rate_limit_request(
    request: Request,
    *,
    scope: str,
    limit: int,
    window_seconds: int,
    tenant_id: Optional[int] = None,
) -> None:
    key = f"{scope}:{client_key(request, tenant_id)}"
    now = time.monotonic()
    with _WINDOW_LOCK:
        hits = _WINDOWS[key]
        while hits and now - hits[0] >= window_seconds:
            hits.popleft()
        if len(hits) >= limit:
            retry_after = max(1, math.ceil(hits[0] + window_seconds - now))
            raise HTTPException(
                status_code=429,
                detail="Trop de factures envoyées. Réessayez dans quelques instants.",
                headers={"Retry-After": str(retry_after)},
            )
        hits.append(now)


def reset_rate_limits() -> None:
    with _WINDOW_LOCK:
        _WINDOWS.clear()


__all__ = ["client_key", "rate_limit_request", "reset_rate_limits"]
