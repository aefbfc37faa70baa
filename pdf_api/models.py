"""
Request/Response Models

Pydantic models for the conversion API, post-processing options and
API key management.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

PAGE_FORMATS = ("A0", "A1", "A2", "A3", "A4", "A5", "A6", "Letter", "Legal", "Tabloid", "Ledger")
DEFAULT_PAGE_FORMAT = "A4"

DEFAULT_HEADER_TEMPLATE = (
    '<div style="font-size:10px; width:100%; text-align:center;">'
    '<span class="title"></span></div>'
)
DEFAULT_FOOTER_TEMPLATE = (
    '<div style="font-size:10px; width:100%; text-align:center;">'
    '<span class="pageNumber"></span> / <span class="totalPages"></span></div>'
)

_CSS_LENGTH = re.compile(r"^\s*(-?\d+(\.\d+)?)\s*(px|in|cm|mm)?\s*$")


def _check_css_length(value: Optional[str], field_name: str) -> Optional[str]:
    if value is None:
        return None
    match = _CSS_LENGTH.match(str(value))
    if not match:
        raise ValueError(f"{field_name} must be a CSS length like '10px', '1in', '5mm'")
    if float(match.group(1)) < 0:
        raise ValueError(f"{field_name} must be non-negative")
    return str(value).strip()


# ============================================================================
# Conversion options
# ============================================================================

class Margin(BaseModel):
    """Page margins as CSS lengths."""
    top: str = "10px"
    right: str = "10px"
    bottom: str = "10px"
    left: str = "10px"

    @field_validator("top", "right", "bottom", "left", mode="before")
    @classmethod
    def validate_length(cls, v, info):
        if isinstance(v, (int, float)):
            v = f"{v}px"
        return _check_css_length(v, f"margin.{info.field_name}")


class PdfOptions(BaseModel):
    """Rendering options passed through to Chromium's print-to-PDF."""
    format: Optional[str] = Field(None, description="Paper format, defaults to A4")
    landscape: bool = False
    margin: Margin = Field(default_factory=Margin)
    scale: float = Field(0.9, ge=0.1, le=2.0)
    print_background: bool = True
    display_header_footer: bool = False
    header_template: Optional[str] = None
    footer_template: Optional[str] = None
    page_ranges: Optional[str] = Field(None, description="e.g. '1-5, 8'")
    width: Optional[str] = None
    height: Optional[str] = None
    smart_page_breaks: bool = Field(False, description="Inject page-break CSS rules")
    save_to_vault: bool = Field(False, description="Persist the PDF to object storage")

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        for known in PAGE_FORMATS:
            if v.lower() == known.lower():
                return known
        raise ValueError(f"format must be one of: {', '.join(PAGE_FORMATS)}")

    @field_validator("width", "height", mode="before")
    @classmethod
    def validate_dimension(cls, v, info):
        if isinstance(v, (int, float)):
            v = f"{v}px"
        return _check_css_length(v, info.field_name)

    @field_validator("page_ranges")
    @classmethod
    def validate_page_ranges(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not re.fullmatch(r"\s*\d+(\s*-\s*\d+)?(\s*,\s*\d+(\s*-\s*\d+)?)*\s*", v):
            raise ValueError("page_ranges must look like '1-5, 8, 11-13'")
        return v.strip()

    @model_validator(mode="after")
    def check_format_vs_dimensions(self) -> "PdfOptions":
        if self.format and (self.width or self.height):
            raise ValueError("format cannot be combined with width/height")
        return self

    @property
    def resolved_format(self) -> Optional[str]:
        """Paper format actually used; None when custom dimensions apply."""
        if self.width or self.height:
            return None
        return self.format or DEFAULT_PAGE_FORMAT


class AiOptions(BaseModel):
    """Optional AI-assisted preprocessing."""
    layout_repair: bool = Field(False, description="Let Gemini fix broken HTML structure")


class WatermarkOptions(BaseModel):
    """Diagonal text stamped across every page."""
    text: str = Field(..., min_length=1, max_length=200)
    opacity: float = Field(0.15, ge=0.0, le=1.0)
    font_size: int = Field(48, ge=8, le=200)
    rotation: float = Field(45, ge=-360, le=360)
    color: str = Field("#888888", description="Hex color")

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if not re.fullmatch(r"#[0-9a-fA-F]{6}", v):
            raise ValueError("color must be a hex value like #888888")
        return v


class SignatureOptions(BaseModel):
    """Text signature block stamped on selected pages."""
    text: str = Field(..., min_length=1, max_length=200)
    pages: Literal["first", "last", "all"] = "last"
    position: Literal["bottom-right", "bottom-left", "top-right", "top-left"] = "bottom-right"
    include_date: bool = True


class DocumentMetadata(BaseModel):
    """PDF document-info fields."""
    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None
    keywords: Optional[List[str]] = None


class PostProcessingOptions(BaseModel):
    """Edits applied to the rendered PDF before it is returned or stored."""
    watermark: Optional[WatermarkOptions] = None
    signature: Optional[SignatureOptions] = None
    append_pdfs: List[str] = Field(
        default_factory=list,
        max_length=10,
        description="Base64-encoded PDFs appended after the rendered pages"
    )
    metadata: Optional[DocumentMetadata] = None

    @property
    def is_empty(self) -> bool:
        return not (self.watermark or self.signature or self.append_pdfs or self.metadata)


class ConvertRequest(BaseModel):
    """Body of POST /v1/convert/pdf."""
    html: Optional[str] = Field(None, description="HTML document or fragment")
    css: Optional[str] = Field(None, description="Extra CSS merged into the document")
    javascript: Optional[str] = Field(None, description="Extra JS merged into the document")
    url: Optional[str] = Field(None, description="Public page to render instead of html")
    file_name: Optional[str] = Field(None, max_length=200)
    options: PdfOptions = Field(default_factory=PdfOptions)
    ai_options: AiOptions = Field(default_factory=AiOptions)
    post_processing: Optional[PostProcessingOptions] = None

    @field_validator("html", "url", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        """Whitespace-only input counts as absent."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else v

    @property
    def input_type(self) -> str:
        return "url" if self.url else "html"


# ============================================================================
# System responses
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    timestamp: datetime
    active_renders: int
    max_concurrent: int
    playwright_ready: bool = True
    playwright_error: Optional[str] = None


class StatusResponse(BaseModel):
    """Operational status for dashboards."""
    status: str
    environment: str
    version: str
    uptime_seconds: float
    pid: int
    active_renders: int
    max_concurrent: int
    cache: Dict[str, Any]
    vault_configured: bool
    layout_repair_enabled: bool
    timestamp: datetime


# ============================================================================
# API key management
# ============================================================================

class RateLimits(BaseModel):
    requestsPerMinute: int = Field(300, ge=1)
    requestsPerHour: int = Field(3000, ge=1)
    requestsPerDay: int = Field(30000, ge=1)
    burstLimit: int = Field(150, ge=1)


class ApiKeyCreateRequest(BaseModel):
    """Admin request to issue a key for a tenant."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    user_id: str = Field(..., min_length=1)
    company_id: str = Field(..., min_length=1)
    key_prefix: Literal["pk_live_", "pk_test_", "sk_live_", "sk_test_"] = "pk_live_"
    permissions: Optional[List[str]] = None
    scopes: Optional[List[str]] = None
    rate_limits: Optional[RateLimits] = None
    allowed_ips: List[str] = Field(default_factory=list)
    expires_in_days: Optional[int] = Field(None, ge=1, le=3650)
    tags: List[str] = Field(default_factory=list)


class ApiKeyUpdateRequest(BaseModel):
    """Editable key fields; omitted fields are left untouched."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    permissions: Optional[List[str]] = None
    scopes: Optional[List[str]] = None
    rate_limits: Optional[RateLimits] = None
    allowed_ips: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class ApiKeyCreatedResponse(BaseModel):
    """Returned exactly once, when the raw key is known."""
    success: bool = True
    api_key: str
    key: Dict[str, Any]
    warning: str = "Store this key securely. It will not be shown again."
