"""
Authentication Module

Two schemes:
- Admin endpoints (key management) use a shared secret bearer token.
- Tenant endpoints use per-tenant API keys verified against their stored
  PBKDF2 hash, then checked for status, expiry, IP whitelist and limits.
"""

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import api_keys
from .config import get_settings
from .dependencies import get_api_key_repository, get_rate_limiter
from .errors import ApiError, ErrorCode, forbidden, rate_limited, unauthorized
from .persistence import ApiKeyRepository

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


@dataclass
class ApiKeyContext:
    """The authenticated key, attached to request.state.api_key."""
    id: Any
    key_id: str
    name: str
    user_id: Optional[str]
    company_id: Optional[str]
    permissions: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    rate_limits: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ApiKeyContext":
        return cls(
            id=doc.get("_id"),
            key_id=doc["keyId"],
            name=doc.get("name", ""),
            user_id=doc.get("userId"),
            company_id=doc.get("companyId"),
            permissions=list(doc.get("permissions") or []),
            scopes=list(doc.get("scopes") or []),
            rate_limits=dict(doc.get("rateLimits") or {}),
        )

    def has_permission(self, *required: str) -> bool:
        return "admin" in self.permissions or bool(set(self.permissions).intersection(required))


def get_admin_secret() -> str:
    """Get the admin API secret from validated config."""
    settings = get_settings()
    if not settings.admin_api_secret:
        raise ValueError("ADMIN_API_SECRET environment variable is required for authentication")
    return settings.admin_api_secret


async def verify_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> Optional[HTTPAuthorizationCredentials]:
    """
    Verify the shared admin secret.

    Raises:
        HTTPException: 401 if token is missing or invalid, 500 if auth is
            required but no secret is configured
    """
    settings = get_settings()
    if not settings.auth_required:
        # Auth not required in development without secret
        return credentials

    try:
        expected_secret = get_admin_secret()
    except ValueError:
        raise HTTPException(status_code=500, detail="Server authentication not configured")

    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"), expected_secret.encode("utf-8")
    ):
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    return credentials


def extract_api_key(request: Request) -> Optional[str]:
    """Bearer token from Authorization, or the X-API-Key header."""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.headers.get("x-api-key") or None


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def require_api_key(
    request: Request,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
    limiter=Depends(get_rate_limiter),
) -> ApiKeyContext:
    """
    Authenticate a tenant request.

    Order: format, lookup by keyId, hash check, active, expiry, IP
    whitelist, daily limit, per-minute limit, then usage is recorded.
    """
    raw_key = extract_api_key(request)
    if not raw_key:
        raise unauthorized(
            "API key required. Send it as 'Authorization: Bearer <key>'",
            code=ErrorCode.UNAUTHORIZED,
        )

    parts = api_keys.parse_api_key(raw_key)
    doc = repository.find_by_key_id(parts["key_id"])
    if doc is None or doc.get("keyPrefix") != parts["prefix"]:
        raise unauthorized("Invalid API key")

    if not api_keys.verify_secret(parts["secret"], doc.get("keyHash", ""), doc.get("salt", "")):
        repository.record_failed_attempt(doc["_id"])
        logger.warning(f"Failed API key verification for key {api_keys.display_key(doc)}")
        raise unauthorized("Invalid API key")

    if not api_keys.is_active(doc):
        raise unauthorized("API key is inactive", code=ErrorCode.API_KEY_INACTIVE)

    now = datetime.now(timezone.utc)
    if api_keys.is_expired(doc, now):
        repository.update_fields(str(doc["_id"]), {"status": "expired", "isActive": False})
        raise unauthorized("API key has expired", code=ErrorCode.API_KEY_EXPIRED)

    ip = client_ip(request)
    if not api_keys.ip_allowed(ip, doc.get("allowedIPs")):
        logger.warning(f"Rejected request from {ip} for key {api_keys.display_key(doc)}")
        raise forbidden("IP address not allowed for this API key", code=ErrorCode.IP_NOT_ALLOWED, ip=ip)

    daily = api_keys.check_daily_rate_limit(doc, now)
    if not daily.allowed:
        raise rate_limited(
            f"Daily request limit of {daily.limit} reached",
            retry_after=daily.retry_after,
            limit=daily.limit,
            reset_time=daily.reset_time.isoformat(),
        )

    per_minute = int(
        (doc.get("rateLimits") or {}).get("requestsPerMinute", api_keys.DEFAULT_RATE_LIMITS["requestsPerMinute"])
    )
    decision = limiter.check_and_consume(doc["keyId"], per_minute)
    if not decision.allowed:
        raise rate_limited(
            f"Rate limit of {per_minute} requests per minute exceeded",
            retry_after=decision.retry_after,
            limit=per_minute,
        )

    usage = api_keys.record_usage(doc.get("usage"), ip=ip, user_agent=request.headers.get("user-agent"), now=now)
    repository.save_usage(doc["_id"], usage)

    context = ApiKeyContext.from_document(doc)
    request.state.api_key = context
    return context


def require_permission(*permissions: str):
    """Dependency factory: the key must hold at least one of permissions."""

    def checker(context: ApiKeyContext = Depends(require_api_key)) -> ApiKeyContext:
        if not context.has_permission(*permissions):
            raise ApiError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                "API key lacks the required permission",
                details={"required": list(permissions)},
            )
        return context

    return checker
