"""Validate and store uploaded invoice files on the shared upload volume."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Literal, Optional, Tuple
from uuid import uuid4

from invoice_pipeline.config import supabase_client

logger = logging.getLogger(__name__)

InvoiceFileKind = Literal["image", "pdf"]

MAX_FILE_BYTES = 10 * 1024 * 1024

SUPPORTED_EXTENSIONS: Dict[str, Tuple[str, InvoiceFileKind]] = {
    ".jpg": ("image/jpeg", "image"),
    ".jpeg": ("image/jpeg", "image"),
    ".png": ("image/png", "image"),
    ".webp": ("image/webp", "image"),
    ".heic": ("image/heic", "image"),
    ".heif": ("image/heif", "image"),
    ".pdf": ("application/pdf", "pdf"),
}

SUPPORTED_MIME_MAP: Dict[str, Tuple[str, InvoiceFileKind]] = {
    "image/jpeg": ("image/jpeg", "image"),
    "image/jpg": ("image/jpeg", "image"),
    "image/png": ("image/png", "image"),
    "image/webp": ("image/webp", "image"),
    "image/heic": ("image/heic", "image"),
    "image/heif": ("image/heif", "image"),
    "application/pdf": ("application/pdf", "pdf"),
}

MIME_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "application/pdf": ".pdf",
}


class InvoiceUploadError(ValueError):
    """Raised when an uploaded file cannot be accepted."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class UploadMeta:
    filename: str
    mime_type: str
    kind: InvoiceFileKind


@dataclass
class StoredUpload:
    file_name: str
    path: Path
    mime_type: str
    kind: InvoiceFileKind
    size: int


def detect_upload_meta(filename: str, content_type: Optional[str]) -> UploadMeta:
    lowered_mime = (content_type or "").lower()
    if lowered_mime in SUPPORTED_MIME_MAP:
        mime_type, kind = SUPPORTED_MIME_MAP[lowered_mime]
        return UploadMeta(filename=filename, mime_type=mime_type, kind=kind)

    extension = Path(filename or "").suffix.lower()
    if extension in SUPPORTED_EXTENSIONS:
        mime_type, kind = SUPPORTED_EXTENSIONS[extension]
        return UploadMeta(filename=filename, mime_type=mime_type, kind=kind)

    if lowered_mime.startswith("image/"):
        return UploadMeta(filename=filename, mime_type=lowered_mime, kind="image")

    guessed_mime, _ = mimetypes.guess_type(filename or "")
    if guessed_mime and guessed_mime.lower().startswith("image/"):
        return UploadMeta(filename=filename, mime_type=guessed_mime, kind="image")

    raise InvoiceUploadError("Format de fichier non pris en charge. Utilisez un PDF ou une image (JPG, PNG, WEBP, HEIC).")


def stored_extension(filename: str, mime_type: str) -> str:
    """Extension matching the detected type; the client suffix is kept only when it agrees."""

    suffix = Path(filename or "").suffix.lower()
    known = SUPPORTED_EXTENSIONS.get(suffix)
    if known is not None and known[0] == mime_type:
        return suffix
    return MIME_EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ""


def store_invoice_upload(
    filename: str,
    content_type: Optional[str],
    data: bytes,
    *,
    tenant_id: int,
    upload_dir: Optional[str] = None,
) -> StoredUpload:
    """Check size and type, then write the file under ``<upload_dir>/<tenant_id>/``."""

    if not data:
        raise InvoiceUploadError("Le fichier envoyé est vide.")
    if len(data) > MAX_FILE_BYTES:
        raise InvoiceUploadError("Le fichier dépasse la taille maximale autorisée (10 MB).", status_code=413)

    meta = detect_upload_meta(filename, content_type)
    extension = stored_extension(filename, meta.mime_type)
    target_dir = Path(upload_dir or supabase_client.UPLOAD_DIR) / str(tenant_id)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{uuid4().hex}{extension}"
    target.write_bytes(data)
    logger.info("Stored invoice upload %s (%s bytes) at %s", filename, len(data), target)
    return StoredUpload(
        file_name=filename or target.name,
        path=target,
        mime_type=meta.mime_type,
        kind=meta.kind,
        size=len(data),
    )


__all__ = [
    "InvoiceUploadError",
    "MAX_FILE_BYTES",
    "StoredUpload",
    "UploadMeta",
    "detect_upload_meta",
    "store_invoice_upload",
    "stored_extension",
]
