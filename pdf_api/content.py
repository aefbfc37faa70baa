"""
Helper functions for assembling the document handed to Chromium.

Merges caller-supplied CSS/JS into HTML, provides the optional page-break
stylesheet and turns PdfOptions into Playwright page.pdf() arguments.
"""

import re
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from .models import DEFAULT_FOOTER_TEMPLATE, DEFAULT_HEADER_TEMPLATE, PdfOptions

_HEAD_CLOSE = re.compile(r"</head\s*>", re.I)
_BODY_OPEN = re.compile(r"<body\b[^>]*>", re.I)
_HTML_OPEN = re.compile(r"<html\b[^>]*>", re.I)
_BODY_CLOSE = re.compile(r"</body\s*>", re.I)


def sanitize_for_path(text: str) -> str:
    """
    Sanitize text for use in file names and object keys.

    Removes special characters (except word chars, spaces, hyphens, dots)
    and replaces spaces with underscores.

    Example:
        >>> sanitize_for_path("Q3 Report (final).pdf")
        "Q3_Report__final_.pdf"
    """
    cleaned = re.sub(r"[^\w\s.-]", "_", text)
    return cleaned.replace(" ", "_")


def build_file_name(file_name: Optional[str] = None, timestamp_ms: Optional[int] = None) -> str:
    """Caller-supplied name (sanitized, .pdf ensured) or api-conversion-<ms>.pdf."""
    if file_name and file_name.strip():
        name = sanitize_for_path(file_name.strip()).lstrip(".")
        if not name.lower().endswith(".pdf"):
            name += ".pdf"
        return name
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"api-conversion-{timestamp_ms}.pdf"


_NON_HEADER_SAFE = re.compile(r'[^\x20-\x7e]|["\\]')


def content_disposition(file_name: str) -> str:
    """
    Attachment header value for a PDF download.

    Headers are Latin-1 on the wire, so names outside printable ASCII get an
    ASCII fallback plus an RFC 5987 filename* parameter carrying the UTF-8 name.

    Example:
        >>> content_disposition("报告.pdf")
        'attachment; filename="__.pdf"; filename*=UTF-8\'\'%E6%8A%A5%E5%91%8A.pdf'
    """
    fallback = _NON_HEADER_SAFE.sub("_", file_name)
    if fallback == file_name:
        return f'attachment; filename="{file_name}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(file_name, safe='')}"


def merge_assets(html: str, css: Optional[str] = None, javascript: Optional[str] = None) -> str:
    """
    Insert CSS and JS into an HTML document.

    CSS goes before </head>; without a head, right after <body>; without a
    body, inside a new <head> after <html>; otherwise it is prepended.
    JS goes before </body>, or is appended.
    """
    if css:
        style = f"<style>{css}</style>"
        if _HEAD_CLOSE.search(html):
            html = _HEAD_CLOSE.sub(lambda m: style + m.group(0), html, count=1)
        elif _BODY_OPEN.search(html):
            html = _BODY_OPEN.sub(lambda m: m.group(0) + style, html, count=1)
        elif _HTML_OPEN.search(html):
            html = _HTML_OPEN.sub(lambda m: f"{m.group(0)}<head>{style}</head>", html, count=1)
        else:
            html = style + html

    if javascript:
        script = f"<script>{javascript}</script>"
        if _BODY_CLOSE.search(html):
            # Last </body> in case the markup embeds another document
            matches = list(_BODY_CLOSE.finditer(html))
            pos = matches[-1].start()
            html = html[:pos] + script + html[pos:]
        else:
            html = html + script

    return html


PAGE_BREAK_CSS = """
@media print {
    * {
        -webkit-print-color-adjust: exact !important;
        color-adjust: exact !important;
    }
}
h1, h2, h3, h4, h5, h6 {
    page-break-after: avoid !important;
    page-break-inside: avoid !important;
    break-after: avoid !important;
    break-inside: avoid !important;
    orphans: 3 !important;
    widows: 3 !important;
}
p {
    orphans: 2 !important;
    widows: 2 !important;
}
li, tr, img, figure, svg, blockquote, pre {
    page-break-inside: avoid !important;
    break-inside: avoid !important;
}
img, svg {
    max-width: 100% !important;
    height: auto !important;
}
thead { display: table-header-group !important; }
tfoot { display: table-footer-group !important; }
figcaption, .caption {
    page-break-before: avoid !important;
    break-before: avoid !important;
}
.section, .card, .panel, .box, .heading-group, .table-wrapper {
    page-break-inside: avoid !important;
    break-inside: avoid !important;
}
.page-break-before {
    page-break-before: always !important;
    break-before: page !important;
}
.page-break-after {
    page-break-after: always !important;
    break-after: page !important;
}
.no-page-break {
    page-break-inside: avoid !important;
    break-inside: avoid !important;
}
.large-content {
    page-break-before: auto !important;
    break-before: auto !important;
}
"""


def page_break_options() -> Dict[str, Any]:
    """Catalog of page-break controls exposed at GET /v1/page-break-options."""
    return {
        "classes": {
            "page-break-before": "Force a page break before this element",
            "page-break-after": "Force a page break after this element",
            "no-page-break": "Keep this element together on one page",
            "heading-group": "Keep heading with following content",
            "table-wrapper": "Keep a table from splitting where possible",
            "large-content": "Let large content break naturally",
        },
        "api_options": {
            "format": "A0-A6, Letter, Legal, Tabloid, Ledger",
            "landscape": "true/false - Landscape orientation",
            "display_header_footer": "true/false - Show header and page numbers",
            "header_template": "Custom HTML for header",
            "footer_template": "Custom HTML for footer",
            "margin": "Custom margins {top, right, bottom, left}",
            "scale": "0.1 to 2 - Scale content",
            "page_ranges": 'e.g. "1-3,5" - Specific page ranges',
            "smart_page_breaks": "true/false - Inject the page-break stylesheet",
        },
        "best_practices": [
            "Use semantic HTML (h1-h6, table, figure, etc.)",
            "Add thead/tbody to tables for proper header repetition",
            "Keep related content in wrapper divs",
            "Use figcaption with images",
            "Avoid very long paragraphs (split at logical points)",
            "Test with various content lengths",
        ],
        "examples": {
            "basic_usage": {
                "html": '<div class="no-page-break"><h2>Title</h2><p>Content that stays together</p></div>',
                "description": "Keep title and content together",
            },
            "table_example": {
                "html": "<table><thead><tr><th>Header</th></tr></thead><tbody><tr><td>Data</td></tr></tbody></table>",
                "description": "Table with repeating headers",
            },
            "page_break_control": {
                "html": '<div class="page-break-before"><h1>New Section</h1></div>',
                "description": "Force new page before section",
            },
        },
    }


def assemble_html(
    html: str,
    css: Optional[str] = None,
    javascript: Optional[str] = None,
    smart_page_breaks: bool = False,
) -> str:
    """Full document for rendering: page-break rules first so caller CSS wins."""
    stylesheet = css or ""
    if smart_page_breaks:
        stylesheet = PAGE_BREAK_CSS + "\n" + stylesheet
    return merge_assets(html, stylesheet or None, javascript)


def build_pdf_kwargs(options: PdfOptions) -> Dict[str, Any]:
    """
    Translate PdfOptions into keyword arguments for Playwright's page.pdf().

    Unset values are omitted so Chromium defaults apply.
    """
    kwargs: Dict[str, Any] = {
        "landscape": options.landscape,
        "print_background": options.print_background,
        "scale": options.scale,
        "margin": options.margin.model_dump(),
        "display_header_footer": options.display_header_footer,
    }

    fmt = options.resolved_format
    if fmt:
        kwargs["format"] = fmt
    if options.width:
        kwargs["width"] = options.width
    if options.height:
        kwargs["height"] = options.height
    if options.page_ranges:
        kwargs["page_ranges"] = options.page_ranges

    if options.display_header_footer:
        kwargs["header_template"] = options.header_template or DEFAULT_HEADER_TEMPLATE
        kwargs["footer_template"] = options.footer_template or DEFAULT_FOOTER_TEMPLATE

    return kwargs
