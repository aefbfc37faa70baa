"""
Conversion API Routes.

- POST /v1/convert/pdf - Convert HTML or a URL to PDF (binary response)
- GET /v1/conversions - List PDFs kept in the vault
- GET /v1/conversions/{conversion_id} - Conversion record
- GET /v1/conversions/{conversion_id}/download - PDF bytes from the vault
- GET /v1/conversions/{conversion_id}/url - Fresh pre-signed download URL
- DELETE /v1/conversions/{conversion_id} - Remove PDF and record
"""

import asyncio
import logging
from io import BytesIO
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ..api_keys import CONVERSION_PERMISSIONS
from ..auth import ApiKeyContext, client_ip, require_api_key, require_permission
from ..content import content_disposition
from ..dependencies import get_conversion_repository, get_pipeline, get_storage
from ..errors import ApiError, ErrorCode, not_found
from ..models import ConvertRequest
from ..persistence import ConversionRepository, pagination_info, serialize_document
from ..pipeline import ConversionPipeline, generate_request_id
from ..storage import VaultStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["conversions"])


def _pdf_response(pdf_bytes: bytes, file_name: str, headers: Optional[dict] = None) -> StreamingResponse:
    all_headers = {
        "Content-Disposition": content_disposition(file_name),
        "Content-Length": str(len(pdf_bytes)),
    }
    all_headers.update(headers or {})
    return StreamingResponse(BytesIO(pdf_bytes), media_type="application/pdf", headers=all_headers)


def _require_storage(storage: Optional[VaultStorage]) -> VaultStorage:
    if storage is None:
        raise ApiError(ErrorCode.STORAGE_NOT_CONFIGURED, "Object storage is not configured")
    return storage


@router.post("/convert/pdf")
async def convert_pdf(
    body: ConvertRequest,
    request: Request,
    api_key: ApiKeyContext = Depends(require_permission(*CONVERSION_PERMISSIONS)),
    pipeline: ConversionPipeline = Depends(get_pipeline),
):
    """
    Convert HTML (with optional CSS/JS) or a public URL to PDF.

    Returns:
        StreamingResponse with the PDF. Metadata travels in headers:
        X-Request-ID, X-Page-Count, X-Credits-Used, X-Cache and, when the
        PDF was kept, X-Vault-Id / X-Vault-Url.

    Raises:
        ApiError: validation (400/413), auth (401/403/429), capacity (503),
            timeouts (408/504) and render failures (5xx)
    """
    request_id = generate_request_id()
    request.state.request_id = request_id

    result = await pipeline.run(
        body,
        api_key,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=request_id,
    )

    headers = {
        "X-Request-ID": result.request_id,
        "X-Page-Count": str(result.page_count),
        "X-Credits-Used": str(result.credits_used),
        "X-Cache": "HIT" if result.cache_hit else "MISS",
        "X-Generation-Time-Ms": str(result.generation_time_ms),
    }
    if result.storage:
        if result.conversion_id:
            headers["X-Vault-Id"] = result.conversion_id
        headers["X-Vault-Key"] = result.storage.key
        if result.storage.url:
            headers["X-Vault-Url"] = result.storage.url

    return _pdf_response(result.pdf_bytes, result.file_name, headers)


@router.get("/conversions")
def list_conversions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None, pattern="^(processing|completed|failed)$"),
    api_key: ApiKeyContext = Depends(require_api_key),
    conversions: ConversionRepository = Depends(get_conversion_repository),
):
    """List the tenant's vault conversions, newest first."""
    docs, total = conversions.list_for_tenant(api_key.company_id, api_key.user_id, page, limit, status)
    return {
        "success": True,
        "data": serialize_document(docs),
        "pagination": pagination_info(page, limit, total),
    }


@router.get("/conversions/{conversion_id}")
def get_conversion(
    conversion_id: str,
    api_key: ApiKeyContext = Depends(require_api_key),
    conversions: ConversionRepository = Depends(get_conversion_repository),
):
    doc = conversions.find_for_tenant(conversion_id, api_key.company_id, api_key.user_id)
    if doc is None:
        raise not_found("Conversion")
    return {"success": True, "data": serialize_document(doc)}


@router.get("/conversions/{conversion_id}/download")
async def download_conversion(
    conversion_id: str,
    api_key: ApiKeyContext = Depends(require_api_key),
    conversions: ConversionRepository = Depends(get_conversion_repository),
    storage: Optional[VaultStorage] = Depends(get_storage),
):
    """Stream a stored PDF back to its owner."""
    storage = _require_storage(storage)
    doc = await asyncio.to_thread(conversions.find_for_tenant, conversion_id, api_key.company_id, api_key.user_id)
    key = ((doc or {}).get("storageInfo") or {}).get("key")
    if doc is None or not key:
        raise not_found("Conversion")

    pdf_bytes = await asyncio.to_thread(storage.download, key)
    await asyncio.to_thread(conversions.increment_download, doc["_id"])
    return _pdf_response(pdf_bytes, doc.get("fileName") or "document.pdf")


@router.get("/conversions/{conversion_id}/url")
def conversion_url(
    conversion_id: str,
    expires_days: int = Query(7, ge=1, le=7),
    api_key: ApiKeyContext = Depends(require_api_key),
    conversions: ConversionRepository = Depends(get_conversion_repository),
    storage: Optional[VaultStorage] = Depends(get_storage),
):
    """Issue a fresh pre-signed URL for a stored PDF."""
    storage = _require_storage(storage)
    doc = conversions.find_for_tenant(conversion_id, api_key.company_id, api_key.user_id)
    key = ((doc or {}).get("storageInfo") or {}).get("key")
    if doc is None or not key:
        raise not_found("Conversion")

    return {
        "success": True,
        "data": {
            "url": storage.signed_url(key, expires_days),
            "expires_in_seconds": expires_days * 24 * 3600,
            "file_name": doc.get("fileName"),
        },
    }


@router.delete("/conversions/{conversion_id}")
def delete_conversion(
    conversion_id: str,
    api_key: ApiKeyContext = Depends(require_api_key),
    conversions: ConversionRepository = Depends(get_conversion_repository),
    storage: Optional[VaultStorage] = Depends(get_storage),
):
    """Delete the stored object (when any) and the conversion record."""
    doc = conversions.find_for_tenant(conversion_id, api_key.company_id, api_key.user_id)
    if doc is None:
        raise not_found("Conversion")

    key = (doc.get("storageInfo") or {}).get("key")
    if key:
        _require_storage(storage).delete(key)
    conversions.delete(doc["_id"])
    logger.info(f"Deleted conversion {conversion_id} (key={key})")
    return {"success": True, "message": "Conversion deleted"}
