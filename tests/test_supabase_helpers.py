import asyncio
import base64
import json

import pytest
from fastapi import HTTPException
from postgrest import APIError

from invoice_pipeline.api.dependencies import get_current_tenant_id
from invoice_pipeline.config import supabase_client
from invoice_pipeline.services import invoice_repository
from invoice_pipeline.services.auth_utils import decode_access_token, token_user_id
from invoice_pipeline.services.invoice_storage import (
    InvoiceUploadError,
    detect_upload_meta,
    store_invoice_upload,
    stored_extension,
)
from invoice_pipeline.services.postgrest_client import (
    create_postgrest_client,
    extract_bearer_token,
    postgrest_status,
    raise_postgrest_error,
)


def _token(claims: dict) -> str:
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"header.{payload}.signature"


def test_extract_bearer_token() -> None:
    assert extract_bearer_token("Bearer abc.def") == "abc.def"
    assert extract_bearer_token("bearer  xyz ") == "xyz"
    for value in (None, "", "Basic abc", "Bearer", "Bearer a b"):
        with pytest.raises(HTTPException) as excinfo:
            extract_bearer_token(value)
        assert excinfo.value.status_code == 401


def test_token_claims() -> None:
    token = _token({"sub": "0f2c-user", "role": "authenticated"})

    assert decode_access_token(token)["role"] == "authenticated"
    assert token_user_id(token) == "0f2c-user"
    assert token_user_id(_token({"role": "anon"})) is None
    with pytest.raises(HTTPException):
        decode_access_token("not-a-jwt")


@pytest.mark.parametrize(
    "code, status_code",
    [("23505", 409), ("23503", 400), ("PGRST116", 404), ("401", 401), ("500", 502), (None, 502)],
)
def test_raise_postgrest_error_maps_codes(code, status_code) -> None:
    error = APIError({"message": "boom", "code": code, "hint": None, "details": None})

    with pytest.raises(HTTPException) as excinfo:
        raise_postgrest_error(error, context="invoice update")

    assert excinfo.value.status_code == status_code


def test_postgrest_status_ignores_sqlstate_codes() -> None:
    assert postgrest_status(APIError({"message": "x", "code": "22P02", "hint": None, "details": None})) == 502


def test_create_postgrest_client_requires_configuration(monkeypatch) -> None:
    monkeypatch.setattr(supabase_client, "SUPABASE_URL", None)
    monkeypatch.setattr(supabase_client, "SUPABASE_ANON_KEY", "anon")

    with pytest.raises(HTTPException) as excinfo:
        create_postgrest_client("token")

    assert excinfo.value.status_code == 500


def test_worker_dao_requires_service_role_key(monkeypatch) -> None:
    monkeypatch.setattr(invoice_repository, "SUPABASE_SERVICE_ROLE_KEY", None)
    with pytest.raises(RuntimeError):
        invoice_repository.create_worker_dao(1)

    monkeypatch.setattr(invoice_repository, "SUPABASE_SERVICE_ROLE_KEY", "service-key")
    dao = invoice_repository.create_worker_dao(3)
    assert dao.tenant_id == 3
    assert dao.api_key == "service-key"
    assert invoice_repository.resolve_postgrest_credentials("user-jwt") == ("service-key", "service-key")


def test_tenant_header_parsing() -> None:
    assert asyncio.run(get_current_tenant_id("12")) == 12
    with pytest.raises(HTTPException) as missing:
        asyncio.run(get_current_tenant_id(None))
    assert missing.value.status_code == 401
    with pytest.raises(HTTPException) as invalid:
        asyncio.run(get_current_tenant_id("abc"))
    assert invalid.value.status_code == 400


def test_detect_upload_meta() -> None:
    assert detect_upload_meta("facture.PDF", None).kind == "pdf"
    assert detect_upload_meta("scan", "image/jpg").mime_type == "image/jpeg"
    assert detect_upload_meta("photo.heic", "application/octet-stream").mime_type == "image/heic"
    with pytest.raises(InvoiceUploadError) as excinfo:
        detect_upload_meta("facture.docx", "application/msword")
    assert excinfo.value.status_code == 400


def test_store_invoice_upload_writes_tenant_file(tmp_path) -> None:
    stored = store_invoice_upload("scan.png", "image/png", b"png-bytes", tenant_id=4, upload_dir=str(tmp_path))

    assert stored.path.parent == tmp_path / "4"
    assert stored.path.suffix == ".png"
    assert stored.path.read_bytes() == b"png-bytes"
    assert stored.size == 9
    with pytest.raises(InvoiceUploadError):
        store_invoice_upload("scan.png", "image/png", b"", tenant_id=4, upload_dir=str(tmp_path))


def test_stored_file_extension_follows_detected_type(tmp_path) -> None:
    stored = store_invoice_upload("evil.exe", "application/pdf", b"%PDF-1.4", tenant_id=4, upload_dir=str(tmp_path))

    assert stored.path.suffix == ".pdf"
    assert stored_extension("scan.JPEG", "image/jpeg") == ".jpeg"
    assert stored_extension("scan.png", "image/jpeg") == ".jpg"
    assert stored_extension("scan", "image/heic") == ".heic"
