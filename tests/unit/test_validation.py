"""
Unit tests for conversion input validation.

Covers size limits, SSRF protection, threat detection and the complexity
estimate, plus the ordering of checks in validate_conversion_request.
"""

import pytest

from pdf_api.errors import ApiError, ErrorCode
from pdf_api.models import ConvertRequest
from pdf_api.validation import (
    MAX_CSS_BYTES,
    MAX_HTML_BYTES,
    MAX_JS_BYTES,
    MAX_URL_LENGTH,
    byte_size,
    detect_security_threats,
    estimate_complexity,
    is_blocked_host,
    validate_content_size,
    validate_conversion_request,
    validate_url,
)


class TestContentSize:
    """Tests for per-part and total size limits."""

    def test_counts_utf8_bytes_not_characters(self):
        assert byte_size("é") == 2
        assert byte_size(None) == 0

    def test_returns_sizes_when_within_limits(self):
        sizes = validate_content_size("<p>hi</p>", "p{}", "1;")
        assert sizes == {"html": 9, "css": 3, "javascript": 2, "total": 14}

    def test_html_over_limit(self):
        with pytest.raises(ApiError) as exc:
            validate_content_size("a" * (MAX_HTML_BYTES + 1))
        assert exc.value.code == ErrorCode.HTML_TOO_LARGE
        assert exc.value.status_code == 413

    def test_html_exactly_at_limit_is_accepted(self):
        sizes = validate_content_size("a" * MAX_HTML_BYTES)
        assert sizes["html"] == MAX_HTML_BYTES

    def test_css_over_limit(self):
        with pytest.raises(ApiError) as exc:
            validate_content_size("<p></p>", css="a" * (MAX_CSS_BYTES + 1))
        assert exc.value.code == ErrorCode.CSS_TOO_LARGE

    def test_javascript_over_limit(self):
        with pytest.raises(ApiError) as exc:
            validate_content_size("<p></p>", javascript="a" * (MAX_JS_BYTES + 1))
        assert exc.value.code == ErrorCode.JAVASCRIPT_TOO_LARGE

    def test_total_over_limit_when_each_part_fits(self, monkeypatch):
        monkeypatch.setattr("pdf_api.validation.MAX_TOTAL_BYTES", 3 * 1024 * 1024)
        with pytest.raises(ApiError) as exc:
            validate_content_size("a" * MAX_CSS_BYTES, "b" * MAX_CSS_BYTES)
        assert exc.value.code == ErrorCode.TOTAL_CONTENT_TOO_LARGE
        assert exc.value.details["limit_bytes"] == 3 * 1024 * 1024


class TestUrlValidation:
    """Tests for URL format and SSRF checks."""

    def test_accepts_public_https_url(self):
        assert validate_url("  https://example.com/report  ") == "https://example.com/report"

    @pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "javascript:alert(1)"])
    def test_rejects_non_http_protocols(self, url):
        with pytest.raises(ApiError) as exc:
            validate_url(url)
        assert exc.value.code == ErrorCode.INVALID_URL_PROTOCOL

    def test_rejects_missing_hostname(self):
        with pytest.raises(ApiError) as exc:
            validate_url("https://")
        assert exc.value.code == ErrorCode.INVALID_URL_FORMAT

    def test_rejects_overlong_url(self):
        with pytest.raises(ApiError) as exc:
            validate_url("https://example.com/" + "a" * MAX_URL_LENGTH)
        assert exc.value.code == ErrorCode.URL_TOO_LONG

    @pytest.mark.parametrize("url", [
        "http://localhost:8080/",
        "http://127.0.0.1/",
        "http://10.0.0.5/",
        "http://192.168.1.1/admin",
        "http://172.16.0.1/",
        "http://172.31.255.255/",
        "http://169.254.169.254/latest/meta-data",
        "http://metadata.google.internal/",
        "http://printer.local/",
        "http://[::1]/",
        "http://0.0.0.0/",
    ])
    def test_blocks_internal_addresses(self, url):
        with pytest.raises(ApiError) as exc:
            validate_url(url)
        assert exc.value.code == ErrorCode.BLOCKED_URL

    def test_allows_public_172_range_outside_private_block(self):
        assert not is_blocked_host("172.32.0.1")

    @pytest.mark.parametrize("host", ["10.example.com", "127.news.net", "192.168.example.org", "172.16.cdn.io"])
    def test_allows_public_names_that_start_like_private_ranges(self, host):
        assert not is_blocked_host(host)
        assert validate_url(f"https://{host}/page") == f"https://{host}/page"

    def test_blocked_host_is_case_insensitive(self):
        assert is_blocked_host("LOCALHOST")


class TestThreatDetection:
    """Tests for script and DOM threat scanning."""

    def test_clean_document_has_no_threats(self):
        assert detect_security_threats("<html><body><p>Invoice</p></body></html>") == []

    def test_eval_reported_as_medium(self):
        threats = detect_security_threats("<p></p>", javascript="eval('1+1')")
        assert [t["type"] for t in threats] == ["eval_usage"]
        assert threats[0]["severity"] == "MEDIUM"

    def test_crypto_mining_detected_in_html(self):
        threats = detect_security_threats("<script>var m = new CoinHive.Anonymous('x');</script>")
        assert any(t["type"] == "crypto_mining" for t in threats)

    def test_excessive_dom_is_high_severity(self):
        html = "<span></span>" * 50001
        threats = detect_security_threats(html)
        assert any(t["type"] == "excessive_dom" and t["severity"] == "HIGH" for t in threats)


class TestComplexity:
    """Tests for the rough page estimate."""

    def test_small_document_is_low_complexity(self):
        result = estimate_complexity("<p>short</p>")
        assert result["estimated_pages"] == 1
        assert result["complexity"] == "low"

    def test_many_images_raise_complexity(self):
        result = estimate_complexity('<img src="a.png">' * 60)
        assert result["complexity"] == "medium"
        assert result["image_count"] == 60

    def test_rejects_documents_estimated_over_page_limit(self):
        with pytest.raises(ApiError) as exc:
            estimate_complexity("a" * (5000 * 1000 + 1))
        assert exc.value.code == ErrorCode.CONTENT_TOO_COMPLEX


class TestValidateConversionRequest:
    """Tests for the combined request check."""

    def test_requires_html_or_url(self):
        with pytest.raises(ApiError) as exc:
            validate_conversion_request(ConvertRequest(html="   "))
        assert exc.value.code == ErrorCode.MISSING_INPUT

    def test_rejects_html_and_url_together(self):
        with pytest.raises(ApiError) as exc:
            validate_conversion_request(ConvertRequest(html="<p>x</p>", url="https://example.com"))
        assert exc.value.code == ErrorCode.CONFLICTING_INPUT

    def test_blank_url_does_not_conflict_with_html(self):
        summary = validate_conversion_request(ConvertRequest(html="<p>Hi</p>", url="   "))
        assert "url" not in summary
        assert summary["complexity"]["complexity"] == "low"

    def test_url_request_is_checked_for_ssrf(self):
        with pytest.raises(ApiError) as exc:
            validate_conversion_request(ConvertRequest(url="http://127.0.0.1:27017"))
        assert exc.value.code == ErrorCode.BLOCKED_URL

    def test_html_request_summary(self):
        summary = validate_conversion_request(ConvertRequest(html="<p>Hello</p>", css="p{color:red}"))
        assert summary["sizes"]["total"] == byte_size("<p>Hello</p>") + byte_size("p{color:red}")
        assert summary["complexity"]["complexity"] == "low"
        assert summary["threats"] == []

    def test_medium_threats_do_not_block(self):
        summary = validate_conversion_request(
            ConvertRequest(html="<p>x</p>", javascript="document.write('x')")
        )
        assert summary["threats"][0]["type"] == "document_write"

    def test_high_threats_block_with_security_violation(self):
        with pytest.raises(ApiError) as exc:
            validate_conversion_request(ConvertRequest(html="<b></b>" * 50001))
        assert exc.value.code == ErrorCode.SECURITY_VIOLATION
        assert exc.value.details["threats"][0]["type"] == "excessive_dom"
