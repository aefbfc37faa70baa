"""
Input Validation Module

Size limits, URL safety (SSRF) checks, script threat detection and a rough
complexity estimate for conversion requests. Every check raises ApiError with
a specific code so the client can tell what to fix.
"""

import ipaddress
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .errors import ApiError, ErrorCode
from .models import ConvertRequest

logger = logging.getLogger(__name__)

MB = 1024 * 1024

MAX_HTML_BYTES = 10 * MB
MAX_CSS_BYTES = 2 * MB
MAX_JS_BYTES = 2 * MB
MAX_TOTAL_BYTES = 15 * MB
MAX_URL_LENGTH = 2048
MAX_ESTIMATED_PAGES = 1000
MAX_DOM_ELEMENTS = 50000
MAX_DIV_ELEMENTS = 5000
CHARS_PER_PAGE = 5000

# Pattern scans are skipped for very large payloads
THREAT_SCAN_LIMIT = 1 * MB

BLOCKED_HOSTNAMES = {
    "localhost",
    "0.0.0.0",
    "::1",
    "metadata.google.internal",
    "metadata",
}
BLOCKED_SUFFIXES = (".local", ".localhost", ".internal")
BLOCKED_PREFIXES = ("127.", "10.", "192.168.", "169.254.")

_PRIVATE_172 = re.compile(r"^172\.(1[6-9]|2\d|3[01])\.")
_IPV4_LITERAL = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")

SCRIPT_THREATS = [
    ("crypto_mining", re.compile(r"coinhive|cryptonight|coin-hive|miner\.start", re.I)),
    ("eval_usage", re.compile(r"\beval\s*\(")),
    ("function_constructor", re.compile(r"\bnew\s+Function\s*\(|\bFunction\s*\(")),
    ("document_write", re.compile(r"document\.write\s*\(")),
    ("iframe_srcdoc", re.compile(r"<iframe[^>]+srcdoc\s*=", re.I)),
    ("data_html_uri", re.compile(r"data:text/html", re.I)),
]

_TAG = re.compile(r"<[a-zA-Z][a-zA-Z0-9-]*")
_DIV = re.compile(r"<div\b", re.I)
_IMG = re.compile(r"<img\b", re.I)
_TABLE = re.compile(r"<table\b", re.I)


def byte_size(text: Optional[str]) -> int:
    """UTF-8 size of a string, 0 for None."""
    return len(text.encode("utf-8")) if text else 0


def validate_content_size(
    html: Optional[str],
    css: Optional[str] = None,
    javascript: Optional[str] = None,
) -> Dict[str, int]:
    """
    Enforce per-part and total size limits.

    Returns:
        Dict with html/css/javascript/total byte sizes

    Raises:
        ApiError: *_TOO_LARGE (413)
    """
    sizes = {
        "html": byte_size(html),
        "css": byte_size(css),
        "javascript": byte_size(javascript),
    }
    sizes["total"] = sizes["html"] + sizes["css"] + sizes["javascript"]

    checks = [
        ("html", MAX_HTML_BYTES, ErrorCode.HTML_TOO_LARGE, "HTML content"),
        ("css", MAX_CSS_BYTES, ErrorCode.CSS_TOO_LARGE, "CSS content"),
        ("javascript", MAX_JS_BYTES, ErrorCode.JAVASCRIPT_TOO_LARGE, "JavaScript content"),
        ("total", MAX_TOTAL_BYTES, ErrorCode.TOTAL_CONTENT_TOO_LARGE, "Total content"),
    ]
    for part, limit, code, label in checks:
        if sizes[part] > limit:
            raise ApiError(
                code,
                f"{label} exceeds the {limit // MB}MB limit",
                details={"size_bytes": sizes[part], "limit_bytes": limit},
            )
    return sizes


def _is_blocked_ip(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def is_blocked_host(hostname: str) -> bool:
    """True for hosts that would let a render reach internal infrastructure."""
    host = hostname.lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES:
        return True
    if host.endswith(BLOCKED_SUFFIXES):
        return True
    # Range prefixes apply to IPv4 literals only, not to names like 10.example.com
    if _IPV4_LITERAL.match(host) and (host.startswith(BLOCKED_PREFIXES) or _PRIVATE_172.match(host)):
        return True
    return _is_blocked_ip(host)


def validate_url(url: str) -> str:
    """
    Check a URL is safe to hand to the browser.

    Raises:
        ApiError: URL_TOO_LONG, INVALID_URL_FORMAT, INVALID_URL_PROTOCOL, BLOCKED_URL
    """
    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise ApiError(
            ErrorCode.URL_TOO_LONG,
            f"URL exceeds maximum length of {MAX_URL_LENGTH} characters",
            details={"length": len(url), "limit": MAX_URL_LENGTH},
        )

    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        raise ApiError(ErrorCode.INVALID_URL_FORMAT, "URL could not be parsed")

    if parsed.scheme not in ("http", "https"):
        raise ApiError(
            ErrorCode.INVALID_URL_PROTOCOL,
            "Only HTTP and HTTPS URLs are supported",
            details={"protocol": parsed.scheme or None},
        )
    if not hostname:
        raise ApiError(ErrorCode.INVALID_URL_FORMAT, "URL has no hostname")

    if is_blocked_host(hostname):
        logger.warning(f"Blocked URL request to internal host: {hostname}")
        raise ApiError(
            ErrorCode.BLOCKED_URL,
            "Access to internal or private network addresses is not allowed",
            details={"hostname": hostname},
        )
    return url


def detect_security_threats(
    html: Optional[str],
    css: Optional[str] = None,
    javascript: Optional[str] = None,
) -> List[Dict[str, str]]:
    """
    Scan content for abusive patterns.

    HIGH severity threats block the request; MEDIUM ones are only reported.
    """
    threats: List[Dict[str, str]] = []
    html = html or ""

    element_count = len(_TAG.findall(html))
    if element_count > MAX_DOM_ELEMENTS:
        threats.append({
            "type": "excessive_dom",
            "severity": "HIGH",
            "description": f"Document has {element_count} elements (limit {MAX_DOM_ELEMENTS})",
        })

    div_count = len(_DIV.findall(html))
    if div_count > MAX_DIV_ELEMENTS:
        threats.append({
            "type": "excessive_nesting",
            "severity": "MEDIUM",
            "description": f"Document has {div_count} div elements",
        })

    combined = "\n".join(part for part in (html, css, javascript) if part)
    if len(combined) <= THREAT_SCAN_LIMIT:
        for name, pattern in SCRIPT_THREATS:
            if pattern.search(combined):
                threats.append({
                    "type": name,
                    "severity": "MEDIUM",
                    "description": f"Suspicious pattern detected: {name}",
                })

    return threats


def estimate_complexity(html: str) -> Dict[str, object]:
    """
    Rough page and complexity estimate from the raw markup.

    Raises:
        ApiError: CONTENT_TOO_COMPLEX when the estimate exceeds MAX_ESTIMATED_PAGES
    """
    estimated_pages = max(1, -(-len(html) // CHARS_PER_PAGE))
    image_count = len(_IMG.findall(html))
    table_count = len(_TABLE.findall(html))

    if estimated_pages > MAX_ESTIMATED_PAGES:
        raise ApiError(
            ErrorCode.CONTENT_TOO_COMPLEX,
            f"Content is estimated at {estimated_pages} pages (limit {MAX_ESTIMATED_PAGES})",
            details={"estimated_pages": estimated_pages, "limit": MAX_ESTIMATED_PAGES},
        )

    if estimated_pages > 100 or image_count > 200 or table_count > 100:
        complexity = "high"
    elif estimated_pages > 20 or image_count > 50 or table_count > 20:
        complexity = "medium"
    else:
        complexity = "low"

    return {
        "estimated_pages": estimated_pages,
        "image_count": image_count,
        "table_count": table_count,
        "complexity": complexity,
    }


def validate_conversion_request(request: ConvertRequest) -> Dict[str, object]:
    """
    Run every input check for a conversion, failing on the first problem.

    Order: input presence, URL safety, sizes, threats, complexity.

    Returns:
        Summary with sizes, threats and complexity for logging
    """
    has_html = bool(request.html and request.html.strip())
    has_url = bool(request.url and request.url.strip())

    if not has_html and not has_url:
        raise ApiError(ErrorCode.MISSING_INPUT, "Either 'html' or 'url' must be provided")
    if has_html and has_url:
        raise ApiError(ErrorCode.CONFLICTING_INPUT, "Provide either 'html' or 'url', not both")

    summary: Dict[str, object] = {}
    if has_url:
        summary["url"] = validate_url(request.url)
        summary["sizes"] = validate_content_size(None, request.css, request.javascript)
        summary["threats"] = []
        return summary

    summary["sizes"] = validate_content_size(request.html, request.css, request.javascript)

    threats = detect_security_threats(request.html, request.css, request.javascript)
    high = [t for t in threats if t["severity"] == "HIGH"]
    if high:
        raise ApiError(
            ErrorCode.SECURITY_VIOLATION,
            "Content rejected by security checks",
            details={"threats": high},
        )
    for threat in threats:
        logger.warning(f"Security warning ({threat['type']}): {threat['description']}")
    summary["threats"] = threats

    summary["complexity"] = estimate_complexity(request.html)
    return summary
