"""
PDF Post-Processing

Edits applied to a rendered PDF with pypdf, using reportlab to draw the
watermark and signature overlays. Order is fixed: append extra documents,
watermark, signature, then document metadata, so stamps also land on
appended pages.
"""

import base64
import binascii
import logging
from datetime import datetime, timezone
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.colors import HexColor
from reportlab.pdfgen import canvas

from .errors import ApiError, ErrorCode
from .models import DocumentMetadata, PostProcessingOptions, SignatureOptions, WatermarkOptions

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"
SIGNATURE_MARGIN = 36  # points (0.5in)


def _read(pdf_bytes: bytes) -> PdfReader:
    return PdfReader(BytesIO(pdf_bytes))


def _write(writer: PdfWriter) -> bytes:
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def get_pdf_metadata(pdf_bytes: bytes) -> Dict[str, object]:
    """
    Page count and document-info fields of a PDF.

    Unreadable documents report a single page so credit metering never
    charges zero for a document that was produced.
    """
    result: Dict[str, object] = {
        "page_count": 1,
        "title": None,
        "author": None,
        "subject": None,
        "creator": None,
        "producer": None,
    }
    try:
        reader = _read(pdf_bytes)
        result["page_count"] = max(1, len(reader.pages))
        info = reader.metadata
        if info:
            result.update({
                "title": info.title,
                "author": info.author,
                "subject": info.subject,
                "creator": info.creator,
                "producer": info.producer,
            })
    except Exception as e:
        logger.warning(f"Could not read PDF metadata, assuming 1 page: {e}")
    return result


def count_pages(pdf_bytes: bytes) -> int:
    """Rendered page count (minimum 1)."""
    return int(get_pdf_metadata(pdf_bytes)["page_count"])


def decode_pdf_base64(value: str, index: int = 0) -> bytes:
    """Decode a base64 PDF supplied by the client and check its header."""
    if "," in value[:100] and value.startswith("data:"):
        value = value.split(",", 1)[1]
    try:
        data = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError(
            ErrorCode.INVALID_OPTIONS,
            f"append_pdfs[{index}] is not valid base64",
        )
    if not data.startswith(PDF_MAGIC):
        raise ApiError(
            ErrorCode.INVALID_OPTIONS,
            f"append_pdfs[{index}] is not a PDF document",
        )
    return data


def append_documents(pdf_bytes: bytes, extra_pdfs: List[bytes]) -> bytes:
    """Concatenate extra PDFs after the rendered pages."""
    writer = PdfWriter()
    writer.append(_read(pdf_bytes))
    for index, extra in enumerate(extra_pdfs):
        try:
            writer.append(_read(extra))
        except PdfReadError as e:
            raise ApiError(
                ErrorCode.INVALID_OPTIONS,
                f"append_pdfs[{index}] could not be read",
                details={"internal": str(e)},
            )
    return _write(writer)


def _page_size(page) -> Tuple[float, float]:
    box = page.mediabox
    return float(box.width), float(box.height)


def _watermark_overlay(size: Tuple[float, float], options: WatermarkOptions):
    width, height = size
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(width, height))
    c.setFillColor(HexColor(options.color))
    c.setFillAlpha(options.opacity)
    c.setFont("Helvetica-Bold", options.font_size)
    c.translate(width / 2, height / 2)
    c.rotate(options.rotation)
    c.drawCentredString(0, 0, options.text)
    c.save()
    return PdfReader(BytesIO(buffer.getvalue())).pages[0]


def apply_watermark(pdf_bytes: bytes, options: WatermarkOptions) -> bytes:
    """Stamp a rotated translucent text across every page."""
    reader = _read(pdf_bytes)
    writer = PdfWriter()
    overlays = {}

    for page in reader.pages:
        size = _page_size(page)
        if size not in overlays:
            overlays[size] = _watermark_overlay(size, options)
        page.merge_page(overlays[size])
        writer.add_page(page)

    return _write(writer)


def _signature_overlay(size: Tuple[float, float], options: SignatureOptions, date_text: Optional[str]):
    width, height = size
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(width, height))

    right = options.position.endswith("right")
    bottom = options.position.startswith("bottom")
    x = width - SIGNATURE_MARGIN if right else SIGNATURE_MARGIN
    y = SIGNATURE_MARGIN + (12 if date_text else 0) if bottom else height - SIGNATURE_MARGIN - 12

    draw = c.drawRightString if right else c.drawString
    c.setFillColor(HexColor("#1a1a1a"))
    c.setFont("Helvetica-Oblique", 12)
    draw(x, y, options.text)
    line_width = c.stringWidth(options.text, "Helvetica-Oblique", 12)
    line_start = x - line_width if right else x
    c.setLineWidth(0.5)
    c.line(line_start, y - 3, line_start + line_width, y - 3)

    if date_text:
        c.setFont("Helvetica", 8)
        draw(x, y - 14, date_text)

    c.save()
    return PdfReader(BytesIO(buffer.getvalue())).pages[0]


def apply_signature(pdf_bytes: bytes, options: SignatureOptions) -> bytes:
    """Stamp a signature line on the first, last or every page."""
    reader = _read(pdf_bytes)
    writer = PdfWriter()
    total = len(reader.pages)
    date_text = None
    if options.include_date:
        date_text = f"Signed {datetime.now(timezone.utc).strftime('%Y-%m-%d')}"

    for index, page in enumerate(reader.pages):
        stamp = (
            options.pages == "all"
            or (options.pages == "first" and index == 0)
            or (options.pages == "last" and index == total - 1)
        )
        if stamp:
            page.merge_page(_signature_overlay(_page_size(page), options, date_text))
        writer.add_page(page)

    return _write(writer)


def set_metadata(pdf_bytes: bytes, metadata: DocumentMetadata) -> bytes:
    """Write document-info fields; unset fields keep their current value."""
    reader = _read(pdf_bytes)
    writer = PdfWriter()
    writer.append(reader)

    info = {}
    if metadata.title is not None:
        info["/Title"] = metadata.title
    if metadata.author is not None:
        info["/Author"] = metadata.author
    if metadata.subject is not None:
        info["/Subject"] = metadata.subject
    if metadata.keywords:
        info["/Keywords"] = ", ".join(metadata.keywords)
    info["/Producer"] = "PDF Conversion API"
    writer.add_metadata(info)

    return _write(writer)


def post_process(pdf_bytes: bytes, options: Optional[PostProcessingOptions]) -> bytes:
    """
    Apply every requested edit in order.

    Raises:
        ApiError: INVALID_OPTIONS for bad client input, POST_PROCESSING_FAILED otherwise
    """
    if options is None or options.is_empty:
        return pdf_bytes

    extras = [decode_pdf_base64(value, i) for i, value in enumerate(options.append_pdfs)]

    try:
        if extras:
            pdf_bytes = append_documents(pdf_bytes, extras)
            logger.info(f"Appended {len(extras)} document(s)")
        if options.watermark:
            pdf_bytes = apply_watermark(pdf_bytes, options.watermark)
        if options.signature:
            pdf_bytes = apply_signature(pdf_bytes, options.signature)
        if options.metadata:
            pdf_bytes = set_metadata(pdf_bytes, options.metadata)
    except ApiError:
        raise
    except Exception as e:
        logger.exception(f"Post-processing failed: {e}")
        raise ApiError(
            ErrorCode.POST_PROCESSING_FAILED,
            "Failed to post-process the PDF",
            details={"internal": str(e)},
        )

    return pdf_bytes
