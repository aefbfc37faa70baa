"""
System Routes.

- GET /health - Liveness plus Playwright readiness (503 when not ready)
- GET /v1/status - Operational snapshot
- GET /v1/page-break-options - Page-break controls catalog
"""

import logging
import os
import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .. import __version__
from ..cache import PdfCache
from ..config import get_settings
from ..content import page_break_options
from ..dependencies import get_cache, get_renderer, get_storage
from ..models import HealthResponse, StatusResponse
from ..renderer import PdfRenderer
from ..storage import VaultStorage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])

# Playwright readiness state, set by the startup validation
_playwright_ready = False
_playwright_error: Optional[str] = None
_started_at = time.monotonic()


async def validate_playwright(renderer: PdfRenderer) -> None:
    """
    Validate Playwright/Chromium by rendering a test PDF.

    The service reports unhealthy until this succeeds.
    """
    global _playwright_ready, _playwright_error

    logger.info("Validating Playwright installation...")
    try:
        size = await renderer.validate()
        if size > 0:
            _playwright_ready = True
            _playwright_error = None
            logger.info(f"Playwright validation successful - generated {size} byte test PDF")
        else:
            _playwright_error = "Test PDF generation returned empty result"
            logger.error(f"Playwright validation failed: {_playwright_error}")
    except Exception as e:
        _playwright_error = str(e)
        logger.error(f"Playwright validation failed: {_playwright_error}")
        logger.error("PDF generation will not work until this is resolved.")


@router.get("/health", response_model=HealthResponse)
async def health_check(renderer: PdfRenderer = Depends(get_renderer)) -> HealthResponse:
    """
    Health check endpoint for container orchestration.

    Returns HTTP 503 if Playwright validation failed on startup.
    """
    if not _playwright_ready:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "unhealthy",
                "timestamp": datetime.utcnow().isoformat(),
                "active_renders": renderer.active_renders,
                "max_concurrent": renderer.max_concurrent,
                "playwright_ready": False,
                "playwright_error": _playwright_error,
                "message": "PDF service is unhealthy - Playwright/Chromium not available",
            },
        )

    return HealthResponse(
        status="healthy",
        timestamp=datetime.utcnow(),
        active_renders=renderer.active_renders,
        max_concurrent=renderer.max_concurrent,
        playwright_ready=True,
        playwright_error=None,
    )


@router.get("/v1/status", response_model=StatusResponse)
async def service_status(
    renderer: PdfRenderer = Depends(get_renderer),
    cache: PdfCache = Depends(get_cache),
    storage: Optional[VaultStorage] = Depends(get_storage),
) -> StatusResponse:
    settings = get_settings()
    return StatusResponse(
        status="operational" if _playwright_ready else "degraded",
        environment=settings.environment,
        version=__version__,
        uptime_seconds=round(time.monotonic() - _started_at, 1),
        pid=os.getpid(),
        active_renders=renderer.active_renders,
        max_concurrent=renderer.max_concurrent,
        cache=cache.stats(),
        vault_configured=storage is not None,
        layout_repair_enabled=bool(settings.gemini_api_key),
        timestamp=datetime.utcnow(),
    )


@router.get("/v1/page-break-options")
async def get_page_break_options():
    return {
        "success": True,
        "message": "Page break options retrieved successfully",
        "data": page_break_options(),
    }
