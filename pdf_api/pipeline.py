"""
Conversion Pipeline

Orchestrates a single POST /v1/convert/pdf request:

    validate -> vault pre-check -> usage log -> assemble content
    -> cache lookup (HTML only) -> layout repair -> render -> cache store
    -> credits from page count -> post-process -> vault upload
    -> accounting -> result

Every failure after the usage log exists marks the log (and the conversion
record, when one was opened) as failed before the error propagates.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .api_keys import CONVERSION_PERMISSIONS, record_outcome
from .cache import PdfCache
from .config import ApiSettings
from .content import assemble_html, build_file_name, build_pdf_kwargs
from .errors import ApiError, ErrorCode
from .layout_repair import LayoutRepairer
from .models import ConvertRequest
from .persistence import ApiKeyRepository, ConversionRepository, UsageLogRepository, UserRepository
from .postprocess import count_pages, post_process
from .renderer import PdfRenderer
from .storage import StoredObject, VaultStorage
from .validation import byte_size, validate_conversion_request

logger = logging.getLogger(__name__)

API_ENDPOINT = "/v1/convert/pdf"


def generate_request_id() -> str:
    """req-<epoch ms>-<9 hex chars>"""
    return f"req-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


@dataclass
class ConversionResult:
    pdf_bytes: bytes
    file_name: str
    request_id: str
    page_count: int
    credits_used: int
    cache_hit: bool = False
    layout_repaired: bool = False
    generation_time_ms: int = 0
    storage: Optional[StoredObject] = None
    conversion_id: Optional[str] = None


@dataclass
class _RunState:
    request_id: str
    started: float = field(default_factory=time.monotonic)
    log_id: Any = None
    conversion_id: Any = None
    api_key_id: Optional[str] = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    @property
    def tag(self) -> str:
        return f"[{self.request_id[-9:]}]"


class ConversionPipeline:
    """One instance per request; collaborators are injected. Blocking repository calls run in worker threads."""

    def __init__(
        self,
        settings: ApiSettings,
        renderer: PdfRenderer,
        cache: PdfCache,
        repairer: LayoutRepairer,
        storage: Optional[VaultStorage],
        conversions: ConversionRepository,
        logs: UsageLogRepository,
        users: UserRepository,
        api_keys: Optional[ApiKeyRepository] = None,
    ):
        self.settings = settings
        self.renderer = renderer
        self.cache = cache
        self.repairer = repairer
        self.storage = storage
        self.conversions = conversions
        self.logs = logs
        self.users = users
        self.api_keys = api_keys

    async def run(
        self,
        request: ConvertRequest,
        api_key,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> ConversionResult:
        """
        Execute the conversion, bounded by REQUEST_TIMEOUT_SECONDS.

        Args:
            request: Validated request body
            api_key: ApiKeyContext of the caller
            client_ip: Caller IP for the usage log
            user_agent: Caller user agent for the usage log
            request_id: Pre-generated id (one is generated otherwise)

        Raises:
            ApiError: for every client-visible failure
        """
        state = _RunState(request_id=request_id or generate_request_id(), api_key_id=api_key.key_id)
        timeout = self.settings.request_timeout_seconds

        try:
            return await asyncio.wait_for(
                self._execute(request, api_key, state, client_ip, user_agent),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            error = ApiError(
                ErrorCode.TIMEOUT,
                f"PDF conversion timed out after {timeout} seconds",
                details={"timeout_seconds": timeout, "request_id": state.request_id},
            )
            await asyncio.to_thread(self._record_failure, state, error)
            raise error
        except ApiError as e:
            await asyncio.to_thread(self._record_failure, state, e)
            raise
        except Exception as e:
            logger.exception(f"{state.tag} Unexpected conversion error: {e}")
            error = ApiError(
                ErrorCode.CONVERSION_FAILED,
                "PDF conversion failed",
                details={"internal": str(e), "request_id": state.request_id},
            )
            await asyncio.to_thread(self._record_failure, state, error)
            raise error from e

    async def _execute(
        self,
        request: ConvertRequest,
        api_key,
        state: _RunState,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> ConversionResult:
        options = request.options
        is_url = request.input_type == "url"

        # 1. Authorization and input checks
        if not api_key.has_permission(*CONVERSION_PERMISSIONS):
            raise ApiError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                "API key does not have PDF conversion permission",
                details={"required": list(CONVERSION_PERMISSIONS)},
            )
        if not api_key.user_id:
            raise ApiError(ErrorCode.UNAUTHORIZED, "API key is not linked to a user")

        summary = validate_conversion_request(request)

        # 2. Vault must exist before any work is done or charged
        if options.save_to_vault and self.storage is None:
            raise ApiError(
                ErrorCode.STORAGE_NOT_CONFIGURED,
                "save_to_vault was requested but object storage is not configured",
            )

        url = summary.get("url")
        file_name = build_file_name(request.file_name)
        input_size = byte_size(url) if is_url else summary["sizes"]["total"]
        logger.info(
            f"{state.tag} Conversion started: input={request.input_type} size={input_size}B "
            f"vault={options.save_to_vault} key={api_key.name!r}"
        )

        # 3. Usage log (and conversion record when the PDF is kept)
        state.log_id = await asyncio.to_thread(self.logs.create, {
            "companyId": api_key.company_id,
            "userId": api_key.user_id,
            "apiKeyId": api_key.key_id,
            "requestId": state.request_id,
            "inputType": request.input_type,
            "inputSizeBytes": input_size,
            "saveToVault": options.save_to_vault,
            "apiEndpoint": API_ENDPOINT,
            "userAgent": user_agent,
            "ipAddress": client_ip,
            "conversionOptions": options.model_dump(),
        })
        if options.save_to_vault:
            state.conversion_id = await asyncio.to_thread(self.conversions.create, {
                "companyId": api_key.company_id,
                "userId": api_key.user_id,
                "requestId": state.request_id,
                "fileName": file_name,
                "inputType": request.input_type,
                "sourceUrl": url,
                "inputSizeBytes": input_size,
                "options": options.model_dump(),
            })

        # 4. Content assembly
        pdf_kwargs = build_pdf_kwargs(options)
        html = None
        if not is_url:
            html = assemble_html(request.html, request.css, request.javascript, options.smart_page_breaks)

        # 5. Cache (HTML only; a URL may change between requests)
        cache_key = None
        cached = None
        if not is_url and self.cache.enabled:
            cache_key = PdfCache.make_key(html, {
                "pdf": pdf_kwargs,
                "layout_repair": request.ai_options.layout_repair,
            })
            cached = self.cache.get(cache_key)

        layout_repaired = False
        if cached is not None:
            logger.info(f"{state.tag} Serving PDF from cache ({cache_key[:8]})")
            pdf_bytes = cached.pdf_bytes
            page_count = cached.page_count
        else:
            # 6. Optional layout repair
            if request.ai_options.layout_repair:
                if is_url:
                    logger.info(f"{state.tag} Layout repair ignored for URL input")
                else:
                    repaired = await asyncio.to_thread(self.repairer.repair, html)
                    layout_repaired = repaired != html
                    html = repaired

            # 7. Render
            if is_url:
                pdf_bytes = await self.renderer.render_url(
                    url, pdf_kwargs, css=request.css, javascript=request.javascript
                )
            else:
                pdf_bytes = await self.renderer.render_html(html, pdf_kwargs)

            page_count = count_pages(pdf_bytes)
            if cache_key is not None:
                self.cache.put(cache_key, pdf_bytes, page_count)

        # 8. Credits = rendered pages
        credits = max(1, page_count)

        # 9. Post-processing
        if request.post_processing and not request.post_processing.is_empty:
            pdf_bytes = await asyncio.to_thread(post_process, pdf_bytes, request.post_processing)

        # 10. Vault
        stored = None
        if options.save_to_vault:
            stored = await asyncio.to_thread(
                self.storage.upload,
                pdf_bytes,
                file_name,
                {"request-id": state.request_id, "company-id": api_key.company_id or ""},
            )
            await asyncio.to_thread(self.conversions.mark_completed, state.conversion_id, {
                "fileSize": len(pdf_bytes),
                "pageCount": page_count,
                "creditsUsed": credits,
                "processingTime": state.elapsed_ms,
                "storageInfo": stored.to_dict(),
                "metadata": {"cacheHit": cached is not None, "layoutRepaired": layout_repaired},
            })

        # 11. Accounting
        generation_ms = state.elapsed_ms
        await asyncio.to_thread(self.logs.mark_success, state.log_id, {
            "outputSizeBytes": len(pdf_bytes),
            "generationTimeMs": generation_ms,
            "creditUsed": credits,
            "pageCount": page_count,
            "storageRef": stored.key if stored else None,
            "cacheHit": cached is not None,
        })
        await asyncio.to_thread(self._charge_credits, state, api_key.user_id, credits)
        await asyncio.to_thread(self._record_key_outcome, state, True)

        logger.info(
            f"{state.tag} Conversion completed: {len(pdf_bytes)}B, {page_count} page(s), "
            f"{credits} credit(s), {generation_ms}ms, cache={'hit' if cached else 'miss'}"
        )
        return ConversionResult(
            pdf_bytes=pdf_bytes,
            file_name=file_name,
            request_id=state.request_id,
            page_count=page_count,
            credits_used=credits,
            cache_hit=cached is not None,
            layout_repaired=layout_repaired,
            generation_time_ms=generation_ms,
            storage=stored,
            conversion_id=str(state.conversion_id) if state.conversion_id else None,
        )

    def _charge_credits(self, state: _RunState, user_id: str, credits: int) -> None:
        try:
            if not self.users.add_credits_used(user_id, credits):
                logger.warning(f"{state.tag} No user record {user_id} to charge {credits} credit(s)")
        except Exception:
            logger.exception(f"{state.tag} Failed to update credits for user {user_id}")

    def _record_key_outcome(self, state: _RunState, success: bool) -> None:
        if self.api_keys is None or not state.api_key_id:
            return
        try:
            doc = self.api_keys.find_by_key_id(state.api_key_id)
            if doc:
                self.api_keys.save_usage(doc["_id"], record_outcome(doc.get("usage"), success))
        except Exception:
            logger.exception(f"{state.tag} Failed to record API key usage outcome")

    def _record_failure(self, state: _RunState, error: ApiError) -> None:
        """Best-effort bookkeeping for a failed request."""
        logger.warning(f"{state.tag} Conversion failed: {error.code.value} {error.message}")
        message = f"{error.code.value}: {error.message}"
        try:
            if state.log_id is not None:
                self.logs.mark_failed(state.log_id, message, state.elapsed_ms)
            if state.conversion_id is not None:
                self.conversions.mark_failed(state.conversion_id, message)
        except Exception:
            logger.exception(f"{state.tag} Failed to record conversion failure")
        self._record_key_outcome(state, success=False)
        error.details.setdefault("request_id", state.request_id)
