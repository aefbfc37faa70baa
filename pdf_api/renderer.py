"""
Headless Chromium renderer.

Launches a fresh browser per conversion (no state shared between tenants),
renders HTML or navigates to a URL and prints the page to PDF.
Concurrency is bounded by a semaphore; callers are rejected with 503 when
every slot is busy rather than queued.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .errors import ApiError, ErrorCode

logger = logging.getLogger(__name__)

CHROMIUM_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-zygote",
    "--disable-features=VizDisplayCompositor",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--memory-pressure-off",
]

VALIDATION_HTML = "<html><body><h1>Test</h1></body></html>"


def classify_render_error(exc: Exception, is_url: bool = False) -> ApiError:
    """Map a Playwright/Chromium failure onto a client-facing ApiError."""
    if isinstance(exc, ApiError):
        return exc

    message = str(exc)
    lowered = message.lower()
    details = {"internal": message[:500]}

    if isinstance(exc, asyncio.TimeoutError) or type(exc).__name__ == "TimeoutError" or "timeout" in lowered:
        if is_url:
            return ApiError(ErrorCode.URL_TIMEOUT, "Timed out loading the URL", details=details)
        return ApiError(ErrorCode.TIMEOUT, "PDF generation timed out", details=details)
    if "err_name_not_resolved" in lowered:
        return ApiError(ErrorCode.DNS_ERROR, "Could not resolve the URL's hostname", details=details)
    if "err_connection_refused" in lowered:
        return ApiError(ErrorCode.CONNECTION_REFUSED, "Connection to the URL was refused", details=details)
    if "err_cert" in lowered or "ssl" in lowered:
        return ApiError(ErrorCode.SSL_ERROR, "TLS/SSL error while loading the URL", details=details)
    if "memory" in lowered:
        return ApiError(ErrorCode.OUT_OF_MEMORY, "Renderer ran out of memory", details=details)
    if "target closed" in lowered or "crash" in lowered or "browser has been closed" in lowered:
        return ApiError(ErrorCode.BROWSER_CRASH, "Browser crashed during rendering", details=details)
    return ApiError(ErrorCode.CONVERSION_FAILED, "PDF generation failed", details=details)


class PdfRenderer:
    """
    Playwright-backed HTML/URL to PDF renderer.

    Attributes:
        headless: Launch Chromium headless
        timeout_ms: Default timeout for navigation and content loading
        executable_path: Optional system Chromium binary
        max_concurrent: Maximum simultaneous renders
    """

    def __init__(
        self,
        headless: bool = True,
        timeout_ms: int = 30000,
        executable_path: Optional[str] = None,
        max_concurrent: int = 5,
    ):
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.executable_path = executable_path
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)

    @property
    def active_renders(self) -> int:
        return self.max_concurrent - self._semaphore._value

    @property
    def has_capacity(self) -> bool:
        return self._semaphore._value > 0

    def _launch_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"headless": self.headless, "args": list(CHROMIUM_ARGS)}
        if self.executable_path:
            options["executable_path"] = self.executable_path
        return options

    async def _render(
        self,
        pdf_kwargs: Dict[str, Any],
        html: Optional[str] = None,
        url: Optional[str] = None,
        css: Optional[str] = None,
        javascript: Optional[str] = None,
    ) -> bytes:
        # Import here to avoid loading Playwright on startup
        from playwright.async_api import async_playwright

        browser = context = page = None
        async with async_playwright() as p:
            try:
                browser = await p.chromium.launch(**self._launch_options())
                context = await browser.new_context()
                page = await context.new_page()
                page.set_default_timeout(self.timeout_ms)

                if url:
                    await page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
                    if css:
                        await page.add_style_tag(content=css)
                    if javascript:
                        await page.add_script_tag(content=javascript)
                else:
                    await page.set_content(html, wait_until="networkidle", timeout=self.timeout_ms)

                return await page.pdf(**pdf_kwargs)
            finally:
                for resource in (page, context, browser):
                    if resource is None:
                        continue
                    try:
                        await resource.close()
                    except Exception as e:
                        logger.debug(f"Ignoring error while closing {type(resource).__name__}: {e}")

    async def render(
        self,
        pdf_kwargs: Dict[str, Any],
        html: Optional[str] = None,
        url: Optional[str] = None,
        css: Optional[str] = None,
        javascript: Optional[str] = None,
    ) -> bytes:
        """
        Render HTML (or navigate to a URL) and return PDF bytes.

        Raises:
            ApiError: TOO_MANY_CONCURRENT_REQUESTS when at capacity, otherwise
                a classified render failure
        """
        if not html and not url:
            raise ApiError(ErrorCode.MISSING_INPUT, "Nothing to render")

        if not self.has_capacity:
            logger.warning("Renderer at capacity, rejecting request")
            raise ApiError(
                ErrorCode.TOO_MANY_CONCURRENT_REQUESTS,
                "Service overloaded. Too many concurrent PDF operations.",
                details={"max_concurrent": self.max_concurrent},
            )

        async with self._semaphore:
            try:
                pdf_bytes = await self._render(pdf_kwargs, html=html, url=url, css=css, javascript=javascript)
            except Exception as e:
                error = classify_render_error(e, is_url=bool(url))
                logger.error(f"Render failed ({error.code.value}): {e}")
                raise error from e

        if not pdf_bytes:
            raise ApiError(ErrorCode.CONVERSION_FAILED, "Renderer returned an empty document")
        logger.info(f"Rendered PDF: {len(pdf_bytes)} bytes")
        return pdf_bytes

    async def render_html(self, html: str, pdf_kwargs: Dict[str, Any]) -> bytes:
        return await self.render(pdf_kwargs, html=html)

    async def render_url(
        self,
        url: str,
        pdf_kwargs: Dict[str, Any],
        css: Optional[str] = None,
        javascript: Optional[str] = None,
    ) -> bytes:
        return await self.render(pdf_kwargs, url=url, css=css, javascript=javascript)

    async def validate(self) -> int:
        """Render a tiny test page; returns its size. Used at startup."""
        pdf_bytes = await self._render({"format": "Letter"}, html=VALIDATION_HTML)
        return len(pdf_bytes)
