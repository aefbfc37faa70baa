"""
PDF Conversion API - FastAPI application.

Multi-tenant HTML/URL to PDF conversion using Playwright/Chromium, with
API-key authentication, usage logs, page-based credits and optional vault
storage.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import settings, validate_config_on_startup
from .dependencies import get_renderer
from .errors import register_exception_handlers
from .persistence import ensure_indexes, get_database
from .routes import api_keys_router, conversions_router, logs_router, system_router
from .routes import system as system_routes

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Validate configuration at startup
validate_config_on_startup()

app = FastAPI(
    title="PDF Conversion API",
    version=__version__,
    description="HTML and URL to PDF conversion with API keys, usage metering and vault storage",
)

# Configure CORS using validated settings
if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Content-Disposition",
            "X-Request-ID",
            "X-Page-Count",
            "X-Credits-Used",
            "X-Cache",
            "X-Vault-Id",
            "X-Vault-Url",
        ],
    )

register_exception_handlers(app, hide_internal=settings.is_production)

app.include_router(system_router)
app.include_router(conversions_router)
app.include_router(logs_router)
app.include_router(api_keys_router)


@app.on_event("startup")
async def validate_playwright_on_startup():
    """Render a test PDF so /health only reports healthy when rendering works."""
    await system_routes.validate_playwright(get_renderer())


@app.on_event("startup")
async def ensure_indexes_on_startup():
    """Create MongoDB indexes (best-effort, the API still starts without them)."""
    try:
        ensure_indexes(get_database())
    except Exception as e:
        logger.warning(f"Could not ensure MongoDB indexes: {e}")
