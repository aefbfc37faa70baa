"""
Dependency providers.

Process-wide singletons (renderer, cache, vault client, rate limiter) and
per-request repositories, exposed as FastAPI dependencies so tests can swap
them via app.dependency_overrides.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends

from .cache import PdfCache
from .config import get_settings
from .layout_repair import LayoutRepairer
from .persistence import ApiKeyRepository, ConversionRepository, UsageLogRepository, UserRepository
from .pipeline import ConversionPipeline
from .rate_limiter import build_rate_limiter
from .renderer import PdfRenderer
from .storage import VaultStorage, get_vault_storage


@lru_cache()
def get_renderer() -> PdfRenderer:
    settings = get_settings()
    return PdfRenderer(
        headless=settings.playwright_headless,
        timeout_ms=settings.playwright_timeout,
        executable_path=settings.chromium_executable_path,
        max_concurrent=settings.max_concurrent_pdfs,
    )


@lru_cache()
def get_cache() -> PdfCache:
    settings = get_settings()
    return PdfCache(settings.pdf_cache_max_entries, settings.pdf_cache_ttl_seconds)


@lru_cache()
def get_repairer() -> LayoutRepairer:
    settings = get_settings()
    return LayoutRepairer(settings.gemini_api_key, settings.gemini_model, settings.gemini_timeout_seconds)


@lru_cache()
def get_storage() -> Optional[VaultStorage]:
    return get_vault_storage(get_settings())


@lru_cache()
def get_rate_limiter():
    return build_rate_limiter(get_settings().redis_url)


def get_api_key_repository() -> ApiKeyRepository:
    return ApiKeyRepository()


def get_conversion_repository() -> ConversionRepository:
    return ConversionRepository()


def get_log_repository() -> UsageLogRepository:
    return UsageLogRepository()


def get_user_repository() -> UserRepository:
    return UserRepository()


def get_pipeline(
    renderer: PdfRenderer = Depends(get_renderer),
    cache: PdfCache = Depends(get_cache),
    repairer: LayoutRepairer = Depends(get_repairer),
    storage: Optional[VaultStorage] = Depends(get_storage),
    conversions: ConversionRepository = Depends(get_conversion_repository),
    logs: UsageLogRepository = Depends(get_log_repository),
    users: UserRepository = Depends(get_user_repository),
    api_keys: ApiKeyRepository = Depends(get_api_key_repository),
) -> ConversionPipeline:
    return ConversionPipeline(
        settings=get_settings(),
        renderer=renderer,
        cache=cache,
        repairer=repairer,
        storage=storage,
        conversions=conversions,
        logs=logs,
        users=users,
        api_keys=api_keys,
    )
