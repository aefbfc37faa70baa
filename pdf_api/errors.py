"""
Error Handling Module

Single exception type for the API plus the FastAPI handler that turns it into
the public error envelope:

    {"success": false,
     "error": {"code": ..., "message": ..., "timestamp": ..., "details": {...}},
     "documentation": "https://docs.pdf-api.dev/errors/<topic>"}
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

DOCS_BASE_URL = "https://docs.pdf-api.dev/errors"


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to API clients."""

    # Input
    MISSING_INPUT = "MISSING_INPUT"
    CONFLICTING_INPUT = "CONFLICTING_INPUT"
    INVALID_HTML = "INVALID_HTML"
    INVALID_URL = "INVALID_URL"
    INVALID_URL_PROTOCOL = "INVALID_URL_PROTOCOL"
    INVALID_URL_FORMAT = "INVALID_URL_FORMAT"
    URL_TOO_LONG = "URL_TOO_LONG"
    BLOCKED_URL = "BLOCKED_URL"
    INVALID_OPTIONS = "INVALID_OPTIONS"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"

    # Size
    HTML_TOO_LARGE = "HTML_TOO_LARGE"
    CSS_TOO_LARGE = "CSS_TOO_LARGE"
    JAVASCRIPT_TOO_LARGE = "JAVASCRIPT_TOO_LARGE"
    TOTAL_CONTENT_TOO_LARGE = "TOTAL_CONTENT_TOO_LARGE"
    CONTENT_TOO_COMPLEX = "CONTENT_TOO_COMPLEX"

    # Auth
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_API_KEY = "INVALID_API_KEY"
    API_KEY_INACTIVE = "API_KEY_INACTIVE"
    API_KEY_EXPIRED = "API_KEY_EXPIRED"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    IP_NOT_ALLOWED = "IP_NOT_ALLOWED"

    # Resources
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # Limits
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TOO_MANY_CONCURRENT_REQUESTS = "TOO_MANY_CONCURRENT_REQUESTS"

    # Processing
    TIMEOUT = "TIMEOUT"
    URL_TIMEOUT = "URL_TIMEOUT"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    BROWSER_CRASH = "BROWSER_CRASH"
    OUT_OF_MEMORY = "OUT_OF_MEMORY"
    POST_PROCESSING_FAILED = "POST_PROCESSING_FAILED"
    DNS_ERROR = "DNS_ERROR"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    SSL_ERROR = "SSL_ERROR"

    # Storage / service
    STORAGE_NOT_CONFIGURED = "STORAGE_NOT_CONFIGURED"
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_CODES: Dict[ErrorCode, int] = {
    ErrorCode.MISSING_INPUT: 400,
    ErrorCode.CONFLICTING_INPUT: 400,
    ErrorCode.INVALID_HTML: 400,
    ErrorCode.INVALID_URL: 400,
    ErrorCode.INVALID_URL_PROTOCOL: 400,
    ErrorCode.INVALID_URL_FORMAT: 400,
    ErrorCode.URL_TOO_LONG: 400,
    ErrorCode.BLOCKED_URL: 400,
    ErrorCode.INVALID_OPTIONS: 400,
    ErrorCode.SECURITY_VIOLATION: 400,
    ErrorCode.HTML_TOO_LARGE: 413,
    ErrorCode.CSS_TOO_LARGE: 413,
    ErrorCode.JAVASCRIPT_TOO_LARGE: 413,
    ErrorCode.TOTAL_CONTENT_TOO_LARGE: 413,
    ErrorCode.CONTENT_TOO_COMPLEX: 413,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INVALID_API_KEY: 401,
    ErrorCode.API_KEY_INACTIVE: 401,
    ErrorCode.API_KEY_EXPIRED: 401,
    ErrorCode.INSUFFICIENT_PERMISSIONS: 403,
    ErrorCode.IP_NOT_ALLOWED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.TOO_MANY_CONCURRENT_REQUESTS: 503,
    ErrorCode.TIMEOUT: 408,
    ErrorCode.URL_TIMEOUT: 504,
    ErrorCode.CONVERSION_FAILED: 500,
    ErrorCode.BROWSER_CRASH: 500,
    ErrorCode.OUT_OF_MEMORY: 507,
    ErrorCode.POST_PROCESSING_FAILED: 500,
    ErrorCode.DNS_ERROR: 502,
    ErrorCode.CONNECTION_REFUSED: 502,
    ErrorCode.SSL_ERROR: 502,
    ErrorCode.STORAGE_NOT_CONFIGURED: 503,
    ErrorCode.STORAGE_UPLOAD_FAILED: 502,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Documentation topic per code; codes without an entry get no link
DOC_TOPICS: Dict[ErrorCode, str] = {
    ErrorCode.MISSING_INPUT: "input-validation",
    ErrorCode.CONFLICTING_INPUT: "input-validation",
    ErrorCode.INVALID_HTML: "input-validation",
    ErrorCode.INVALID_URL: "url-validation",
    ErrorCode.INVALID_URL_PROTOCOL: "url-validation",
    ErrorCode.INVALID_URL_FORMAT: "url-validation",
    ErrorCode.URL_TOO_LONG: "url-validation",
    ErrorCode.BLOCKED_URL: "url-validation",
    ErrorCode.INVALID_OPTIONS: "pdf-options",
    ErrorCode.SECURITY_VIOLATION: "security",
    ErrorCode.HTML_TOO_LARGE: "size-limits",
    ErrorCode.CSS_TOO_LARGE: "size-limits",
    ErrorCode.JAVASCRIPT_TOO_LARGE: "size-limits",
    ErrorCode.TOTAL_CONTENT_TOO_LARGE: "size-limits",
    ErrorCode.CONTENT_TOO_COMPLEX: "size-limits",
    ErrorCode.INVALID_API_KEY: "authentication",
    ErrorCode.API_KEY_INACTIVE: "authentication",
    ErrorCode.API_KEY_EXPIRED: "authentication",
    ErrorCode.INSUFFICIENT_PERMISSIONS: "authentication",
    ErrorCode.IP_NOT_ALLOWED: "authentication",
    ErrorCode.RATE_LIMIT_EXCEEDED: "rate-limits",
    ErrorCode.TOO_MANY_CONCURRENT_REQUESTS: "rate-limits",
    ErrorCode.TIMEOUT: "timeouts",
    ErrorCode.URL_TIMEOUT: "timeouts",
    ErrorCode.STORAGE_NOT_CONFIGURED: "vault",
    ErrorCode.STORAGE_UPLOAD_FAILED: "vault",
}


class ApiError(Exception):
    """
    Error raised anywhere in the request path and rendered by the handler.

    Attributes:
        code: ErrorCode value
        message: Human-readable message
        status_code: HTTP status (derived from code unless overridden)
        details: Optional extra context for the client
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = ErrorCode(code)
        self.message = message
        self.status_code = status_code or STATUS_CODES.get(self.code, 500)
        self.details = details or {}
        super().__init__(f"{self.code.value}: {message}")


def error_payload(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the JSON error envelope."""
    error: Dict[str, Any] = {
        "code": ErrorCode(code).value,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        error["details"] = details

    payload: Dict[str, Any] = {"success": False, "error": error}
    topic = DOC_TOPICS.get(ErrorCode(code))
    if topic:
        payload["documentation"] = f"{DOCS_BASE_URL}/{topic}"
    return payload


def error_response(
    error: ApiError,
    request_id: Optional[str] = None,
    hide_internal: bool = False,
) -> JSONResponse:
    """Render an ApiError as a JSONResponse with the appropriate headers."""
    details = dict(error.details)
    if hide_internal and error.status_code >= 500:
        details.pop("internal", None)

    headers = {}
    retry_after = details.get("retry_after")
    if error.status_code == 429 and retry_after is not None:
        headers["Retry-After"] = str(int(retry_after))
    if request_id:
        headers["X-Request-ID"] = request_id

    return JSONResponse(
        status_code=error.status_code,
        content=error_payload(error.code, error.message, details),
        headers=headers,
    )


def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_OPTIONS, **details) -> ApiError:
    return ApiError(code, message, details=details)


def unauthorized(message: str, code: ErrorCode = ErrorCode.INVALID_API_KEY) -> ApiError:
    return ApiError(code, message)


def forbidden(message: str, code: ErrorCode = ErrorCode.INSUFFICIENT_PERMISSIONS, **details) -> ApiError:
    return ApiError(code, message, details=details)


def not_found(resource: str) -> ApiError:
    return ApiError(ErrorCode.NOT_FOUND, f"{resource} not found")


def rate_limited(message: str, retry_after: int, **details) -> ApiError:
    return ApiError(
        ErrorCode.RATE_LIMIT_EXCEEDED,
        message,
        details={"retry_after": retry_after, **details},
    )


def register_exception_handlers(app: FastAPI, hide_internal: bool = False) -> None:
    """Attach the ApiError, option-validation and fallback handlers to the app."""

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error(f"{exc.code.value} on {request.url.path}: {exc.message}")
        else:
            logger.info(f"{exc.code.value} on {request.url.path}: {exc.message}")
        return error_response(exc, request_id=request_id, hide_internal=hide_internal)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}: {exc}")
        error = ApiError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")
        return error_response(error, request_id=getattr(request.state, "request_id", None))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        option_errors = options_validation_errors(exc.errors())
        if not option_errors:
            return await request_validation_exception_handler(request, exc)
        logger.info(f"INVALID_OPTIONS on {request.url.path}: {option_errors}")
        error = ApiError(
            ErrorCode.INVALID_OPTIONS,
            "Invalid PDF generation options provided",
            details={"errors": option_errors},
        )
        return error_response(error, request_id=getattr(request.state, "request_id", None))


OPTION_SECTIONS = ("options", "ai_options", "post_processing")


def options_validation_errors(errors) -> list:
    """
    Pick the body validation errors that belong to the option sections.

    Returns:
        List of {"field": "options.scale", "message": ...}; empty when every
        error is elsewhere in the request.
    """
    picked = []
    for error in errors:
        loc = tuple(error.get("loc") or ())
        if len(loc) >= 2 and loc[0] == "body" and loc[1] in OPTION_SECTIONS:
            picked.append({
                "field": ".".join(str(part) for part in loc[1:]),
                "message": error.get("msg", ""),
            })
    return picked
