"""
API Key Management

Key material generation, PBKDF2 hashing/verification and the pure helpers
that operate on stored key documents (usage counters, daily limit, IP
whitelist, expiry).

A presented key looks like ``<prefix><keyId>_<secret>``, e.g.
``pk_live_3f2a..._Qm9v...``. Only keyId, salt and the PBKDF2 hash of the
secret are stored; the raw key is shown once at creation.
"""

import base64
import hashlib
import hmac
import ipaddress
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .errors import ApiError, ErrorCode

KEY_PREFIXES = ("pk_live_", "pk_test_", "sk_live_", "sk_test_")

PERMISSIONS = (
    "pdf_conversion",
    "html_to_pdf",
    "url_to_pdf",
    "bulk_conversion",
    "analytics",
    "admin",
    "read_only",
)
DEFAULT_PERMISSIONS = ["pdf_conversion", "html_to_pdf"]
CONVERSION_PERMISSIONS = ("pdf_conversion", "html_to_pdf")

SCOPES = ("pdf:create", "pdf:read", "pdf:delete", "logs:read", "logs:delete", "analytics:read")
DEFAULT_SCOPES = ["pdf:create", "pdf:read", "logs:read"]

DEFAULT_RATE_LIMITS = {
    "requestsPerMinute": 300,
    "requestsPerHour": 3000,
    "requestsPerDay": 30000,
    "burstLimit": 150,
}

KEY_STATUSES = ("active", "inactive", "suspended", "expired", "revoked")

PBKDF2_ITERATIONS = 100000
PBKDF2_KEY_LENGTH = 64
PBKDF2_DIGEST = "sha512"

DAILY_USAGE_RETENTION = 90
MONTHLY_USAGE_RETENTION = 24


@dataclass
class KeyMaterial:
    """Freshly generated secret plus what gets stored for it."""
    raw_secret: str
    key_id: str
    key_hash: str
    salt: str


@dataclass
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    reset_time: datetime

    @property
    def retry_after(self) -> int:
        now = datetime.now(timezone.utc)
        return max(1, int((self.reset_time - now).total_seconds()))


def hash_secret(secret: str, salt_hex: str) -> str:
    """PBKDF2-HMAC-SHA512, 100k iterations, 64-byte key, hex encoded."""
    derived = hashlib.pbkdf2_hmac(
        PBKDF2_DIGEST,
        secret.encode("utf-8"),
        bytes.fromhex(salt_hex),
        PBKDF2_ITERATIONS,
        dklen=PBKDF2_KEY_LENGTH,
    )
    return derived.hex()


def verify_secret(secret: str, key_hash: str, salt_hex: str) -> bool:
    """Constant-time comparison of the presented secret against the stored hash."""
    try:
        candidate = hash_secret(secret, salt_hex)
    except ValueError:
        return False
    return hmac.compare_digest(candidate, key_hash)


def generate_key_material() -> KeyMaterial:
    """48 random bytes of secret (base64url), 24-byte key id, 32-byte salt."""
    raw_secret = base64.urlsafe_b64encode(secrets.token_bytes(48)).decode("ascii").rstrip("=")
    key_id = secrets.token_hex(24)
    salt = secrets.token_hex(32)
    return KeyMaterial(
        raw_secret=raw_secret,
        key_id=key_id,
        key_hash=hash_secret(raw_secret, salt),
        salt=salt,
    )


def format_api_key(prefix: str, key_id: str, secret: str) -> str:
    return f"{prefix}{key_id}_{secret}"


def parse_api_key(api_key: str) -> Dict[str, str]:
    """
    Split a presented key into prefix, keyId and secret.

    The secret is base64url and may itself contain underscores, so only the
    first underscore after the key id separates the two.

    Raises:
        ApiError: INVALID_API_KEY when the format is wrong
    """
    api_key = (api_key or "").strip()
    prefix = next((p for p in KEY_PREFIXES if api_key.startswith(p)), None)
    if prefix is None:
        raise ApiError(ErrorCode.INVALID_API_KEY, "Invalid API key format")

    key_id, sep, secret = api_key[len(prefix):].partition("_")
    if not sep or len(key_id) != 48 or not secret:
        raise ApiError(ErrorCode.INVALID_API_KEY, "Invalid API key format")
    try:
        bytes.fromhex(key_id)
    except ValueError:
        raise ApiError(ErrorCode.INVALID_API_KEY, "Invalid API key format")

    return {"prefix": prefix, "key_id": key_id, "secret": secret}


def empty_usage() -> Dict[str, Any]:
    return {
        "totalRequests": 0,
        "successfulRequests": 0,
        "failedRequests": 0,
        "lastUsed": None,
        "lastUsedIP": None,
        "lastUsedUserAgent": None,
        "dailyUsage": [],
        "monthlyUsage": [],
    }


def build_api_key_document(
    name: str,
    user_id: str,
    company_id: str,
    material: KeyMaterial,
    key_prefix: str = "pk_live_",
    description: Optional[str] = None,
    permissions: Optional[List[str]] = None,
    scopes: Optional[List[str]] = None,
    rate_limits: Optional[Dict[str, int]] = None,
    allowed_ips: Optional[List[str]] = None,
    expires_in_days: Optional[int] = None,
    tags: Optional[List[str]] = None,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the Mongo document for a new key.

    Raises:
        ApiError: INVALID_OPTIONS for unknown prefixes, permissions, scopes or IPs
    """
    now = now or datetime.now(timezone.utc)
    if key_prefix not in KEY_PREFIXES:
        raise ApiError(ErrorCode.INVALID_OPTIONS, f"key_prefix must be one of {', '.join(KEY_PREFIXES)}")

    permissions = validate_permissions(permissions or DEFAULT_PERMISSIONS)
    scopes = validate_scopes(scopes or DEFAULT_SCOPES)
    allowed_ips = validate_allowed_ips(allowed_ips or [])

    return {
        "name": name.strip(),
        "description": description,
        "keyHash": material.key_hash,
        "keyId": material.key_id,
        "salt": material.salt,
        "keyPrefix": key_prefix,
        "userId": user_id,
        "companyId": company_id,
        "createdBy": created_by or user_id,
        "permissions": permissions,
        "scopes": scopes,
        "rateLimits": {**DEFAULT_RATE_LIMITS, **(rate_limits or {})},
        "usage": empty_usage(),
        "status": "active",
        "isActive": True,
        "expiresAt": now + timedelta(days=expires_in_days) if expires_in_days else None,
        "allowedIPs": allowed_ips,
        "allowedDomains": [],
        "securityMetadata": {
            "failedAttempts": 0,
            "lastFailedAttempt": None,
            "rotationCount": 0,
            "lastRotated": None,
        },
        "tags": tags or [],
        "isDeleted": False,
        "createdAt": now,
        "updatedAt": now,
    }


def rotation_update(material: KeyMaterial, doc: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """$set fields for regenerating a key's secret."""
    now = now or datetime.now(timezone.utc)
    security = doc.get("securityMetadata") or {}
    return {
        "keyId": material.key_id,
        "keyHash": material.key_hash,
        "salt": material.salt,
        "securityMetadata.rotationCount": int(security.get("rotationCount", 0)) + 1,
        "securityMetadata.lastRotated": now,
        "securityMetadata.failedAttempts": 0,
        "updatedAt": now,
    }


def validate_permissions(permissions: Iterable[str]) -> List[str]:
    permissions = list(dict.fromkeys(permissions))
    unknown = [p for p in permissions if p not in PERMISSIONS]
    if unknown:
        raise ApiError(ErrorCode.INVALID_OPTIONS, f"Unknown permissions: {', '.join(unknown)}")
    return permissions


def validate_scopes(scopes: Iterable[str]) -> List[str]:
    scopes = list(dict.fromkeys(scopes))
    unknown = [s for s in scopes if s not in SCOPES]
    if unknown:
        raise ApiError(ErrorCode.INVALID_OPTIONS, f"Unknown scopes: {', '.join(unknown)}")
    return scopes


def validate_allowed_ips(entries: Iterable[str]) -> List[str]:
    """Each entry must be an IP address or a CIDR network."""
    cleaned = []
    for entry in entries:
        entry = entry.strip()
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            raise ApiError(ErrorCode.INVALID_OPTIONS, f"Invalid IP or CIDR in allowed_ips: {entry}")
        cleaned.append(entry)
    return cleaned


def ip_allowed(client_ip: Optional[str], allowed_ips: Optional[List[str]]) -> bool:
    """Empty whitelist allows everyone; otherwise exact or CIDR match."""
    if not allowed_ips:
        return True
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed_ips:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo returns naive UTC datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(doc: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires_at = _aware(doc.get("expiresAt"))
    if expires_at is None:
        return False
    return expires_at <= (now or datetime.now(timezone.utc))


def is_active(doc: Dict[str, Any]) -> bool:
    return bool(doc.get("isActive")) and doc.get("status", "active") == "active" and not doc.get("isDeleted")


def has_permission(doc: Dict[str, Any], *required: str) -> bool:
    """True when the key holds any of the required permissions."""
    granted = set(doc.get("permissions") or [])
    if "admin" in granted:
        return True
    return bool(granted.intersection(required))


def check_daily_rate_limit(doc: Dict[str, Any], now: Optional[datetime] = None) -> RateLimitStatus:
    """Compare today's request count in usage.dailyUsage with requestsPerDay."""
    now = now or datetime.now(timezone.utc)
    today = now.strftime("%Y-%m-%d")
    limit = int((doc.get("rateLimits") or {}).get("requestsPerDay", DEFAULT_RATE_LIMITS["requestsPerDay"]))

    daily = (doc.get("usage") or {}).get("dailyUsage") or []
    used = next((int(d.get("requests", 0)) for d in daily if d.get("date") == today), 0)

    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return RateLimitStatus(
        allowed=used < limit,
        limit=limit,
        remaining=max(0, limit - used),
        reset_time=tomorrow,
    )


def _bump(entries: List[Dict[str, Any]], field: str, value: str, success: Optional[bool], keep: int) -> List[Dict[str, Any]]:
    entry = next((e for e in entries if e.get(field) == value), None)
    if entry is None:
        entry = {field: value, "requests": 0, "successful": 0, "failed": 0}
        entries.append(entry)
    entry["requests"] += 1
    if success is True:
        entry["successful"] += 1
    elif success is False:
        entry["failed"] += 1
    entries.sort(key=lambda e: e[field])
    return entries[-keep:]


def record_usage(
    usage: Optional[Dict[str, Any]],
    success: Optional[bool] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Return an updated copy of a key's embedded usage sub-document.

    success=None counts an authenticated request whose outcome is not yet
    known; it increments request totals only.
    """
    now = now or datetime.now(timezone.utc)
    usage = {**empty_usage(), **(usage or {})}
    usage["dailyUsage"] = [dict(e) for e in usage.get("dailyUsage") or []]
    usage["monthlyUsage"] = [dict(e) for e in usage.get("monthlyUsage") or []]

    usage["totalRequests"] = int(usage.get("totalRequests") or 0) + 1
    if success is True:
        usage["successfulRequests"] = int(usage.get("successfulRequests") or 0) + 1
    elif success is False:
        usage["failedRequests"] = int(usage.get("failedRequests") or 0) + 1

    usage["lastUsed"] = now
    if ip:
        usage["lastUsedIP"] = ip
    if user_agent:
        usage["lastUsedUserAgent"] = user_agent

    usage["dailyUsage"] = _bump(usage["dailyUsage"], "date", now.strftime("%Y-%m-%d"), success, DAILY_USAGE_RETENTION)
    usage["monthlyUsage"] = _bump(usage["monthlyUsage"], "month", now.strftime("%Y-%m"), success, MONTHLY_USAGE_RETENTION)
    return usage


def record_outcome(
    usage: Optional[Dict[str, Any]],
    success: bool,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Count the result of a request already counted by record_usage()."""
    now = now or datetime.now(timezone.utc)
    usage = {**empty_usage(), **(usage or {})}
    counter = "successful" if success else "failed"
    total_field = "successfulRequests" if success else "failedRequests"
    usage[total_field] = int(usage.get(total_field) or 0) + 1

    for field, value, array in (
        ("date", now.strftime("%Y-%m-%d"), "dailyUsage"),
        ("month", now.strftime("%Y-%m"), "monthlyUsage"),
    ):
        entries = [dict(e) for e in usage.get(array) or []]
        entry = next((e for e in entries if e.get(field) == value), None)
        if entry is not None:
            entry[counter] = int(entry.get(counter) or 0) + 1
        usage[array] = entries
    return usage


def display_key(doc: Dict[str, Any]) -> str:
    """Masked form safe to show in listings."""
    key_id = doc.get("keyId", "")
    return f"{doc.get('keyPrefix', '')}{key_id[:8]}...{key_id[-4:]}"


def public_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Key document without secret material, ready for serialization."""
    hidden = {"keyHash", "salt"}
    view = {k: v for k, v in doc.items() if k not in hidden}
    view["displayKey"] = display_key(doc)
    return view
