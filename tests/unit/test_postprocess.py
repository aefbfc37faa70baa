"""
Unit tests for PDF post-processing (pypdf + reportlab overlays).

Uses real PDFs built with reportlab so page counts and metadata are checked
against what pypdf actually reads back.
"""

import base64
from io import BytesIO

import pytest
from pypdf import PdfReader

from pdf_api.errors import ApiError, ErrorCode
from pdf_api.models import (
    DocumentMetadata,
    PostProcessingOptions,
    SignatureOptions,
    WatermarkOptions,
)
from pdf_api.postprocess import (
    apply_signature,
    apply_watermark,
    count_pages,
    decode_pdf_base64,
    get_pdf_metadata,
    post_process,
    set_metadata,
)


def page_text(pdf_bytes, index):
    return PdfReader(BytesIO(pdf_bytes)).pages[index].extract_text()


class TestPdfMetadata:
    """Tests for get_pdf_metadata and count_pages."""

    def test_counts_pages(self, pdf_factory):
        assert count_pages(pdf_factory(pages=3)) == 3

    def test_unreadable_pdf_counts_as_one_page(self):
        assert count_pages(b"not a pdf") == 1
        assert get_pdf_metadata(b"not a pdf")["title"] is None


class TestDecodePdfBase64:
    """Tests for decode_pdf_base64 function."""

    def test_plain_base64(self, pdf_factory):
        pdf = pdf_factory()
        assert decode_pdf_base64(base64.b64encode(pdf).decode()) == pdf

    def test_data_uri(self, pdf_factory):
        pdf = pdf_factory()
        encoded = "data:application/pdf;base64," + base64.b64encode(pdf).decode()
        assert decode_pdf_base64(encoded) == pdf

    def test_rejects_invalid_base64(self):
        with pytest.raises(ApiError) as exc:
            decode_pdf_base64("***not base64***", index=2)
        assert exc.value.code == ErrorCode.INVALID_OPTIONS
        assert "append_pdfs[2]" in exc.value.message

    def test_rejects_non_pdf_payload(self):
        with pytest.raises(ApiError) as exc:
            decode_pdf_base64(base64.b64encode(b"hello world").decode())
        assert exc.value.code == ErrorCode.INVALID_OPTIONS


class TestOverlays:
    """Tests for watermark and signature stamping."""

    def test_watermark_every_page(self, pdf_factory):
        result = apply_watermark(pdf_factory(pages=2), WatermarkOptions(text="CONFIDENTIAL", rotation=0))
        assert count_pages(result) == 2
        assert "CONFIDENTIAL" in page_text(result, 0)
        assert "CONFIDENTIAL" in page_text(result, 1)

    def test_signature_on_last_page_only(self, pdf_factory):
        result = apply_signature(pdf_factory(pages=3), SignatureOptions(text="Jane Doe", include_date=False))
        assert "Jane Doe" not in page_text(result, 0)
        assert "Jane Doe" in page_text(result, 2)

    def test_signature_first_page_with_date(self, pdf_factory):
        options = SignatureOptions(text="Jane Doe", pages="first", position="top-left")
        result = apply_signature(pdf_factory(pages=2), options)
        text = page_text(result, 0)
        assert "Jane Doe" in text
        assert "Signed" in text
        assert "Jane Doe" not in page_text(result, 1)


class TestSetMetadata:
    """Tests for set_metadata function."""

    def test_writes_document_info(self, pdf_factory):
        result = set_metadata(pdf_factory(), DocumentMetadata(title="Q3", author="Finance", keywords=["a", "b"]))
        meta = PdfReader(BytesIO(result)).metadata
        assert meta.title == "Q3"
        assert meta.author == "Finance"
        assert meta["/Keywords"] == "a, b"
        assert meta["/Producer"] == "PDF Conversion API"


class TestPostProcess:
    """Tests for the full post_process sequence."""

    def test_none_or_empty_options_return_input(self):
        assert post_process(b"%PDF", None) == b"%PDF"
        assert post_process(b"%PDF", PostProcessingOptions()) == b"%PDF"

    def test_append_then_watermark_covers_appended_pages(self, pdf_factory):
        options = PostProcessingOptions(
            append_pdfs=[base64.b64encode(pdf_factory(pages=2)).decode()],
            watermark=WatermarkOptions(text="DRAFT", rotation=0),
            metadata=DocumentMetadata(title="Bundle"),
        )
        result = post_process(pdf_factory(pages=1), options)

        assert count_pages(result) == 3
        assert "DRAFT" in page_text(result, 2)
        assert get_pdf_metadata(result)["title"] == "Bundle"

    def test_bad_append_payload_is_client_error(self, pdf_factory):
        options = PostProcessingOptions(append_pdfs=["bm90IGEgcGRm"])
        with pytest.raises(ApiError) as exc:
            post_process(pdf_factory(), options)
        assert exc.value.code == ErrorCode.INVALID_OPTIONS
        assert exc.value.status_code == 400

    def test_unreadable_rendered_pdf_is_post_processing_failure(self):
        options = PostProcessingOptions(watermark=WatermarkOptions(text="X"))
        with pytest.raises(ApiError) as exc:
            post_process(b"%PDF-broken", options)
        assert exc.value.code == ErrorCode.POST_PROCESSING_FAILED
