"""
Unit tests for configuration validation.
"""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from pdf_api.config import ApiSettings, validate_config_on_startup


class TestFieldValidation:
    """Tests for ApiSettings validators."""

    def test_defaults(self):
        settings = ApiSettings()
        assert settings.environment == "development"
        assert settings.max_concurrent_pdfs == 5
        assert settings.auth_required is False
        assert settings.vault_configured is False

    def test_environment_is_normalized(self):
        assert ApiSettings(environment="PRODUCTION").is_production is True

    def test_unknown_environment(self):
        with pytest.raises(ValidationError):
            ApiSettings(environment="qa")

    def test_short_admin_secret(self):
        with pytest.raises(ValidationError):
            ApiSettings(admin_api_secret="short")

    def test_low_entropy_admin_secret(self):
        with pytest.raises(ValidationError):
            ApiSettings(admin_api_secret="aaaaaaaaaaaaaaaaaaaa")

    def test_admin_secret_enables_auth(self):
        assert ApiSettings(admin_api_secret="s3cure-Admin-Secret-2024").auth_required is True

    def test_invalid_mongodb_uri(self):
        with pytest.raises(ValidationError):
            ApiSettings(mongodb_uri="postgres://localhost")

    def test_invalid_vault_endpoint(self):
        with pytest.raises(ValidationError):
            ApiSettings(vault_endpoint_url="ftp://storage")

    def test_key_prefix_normalized(self):
        assert ApiSettings(vault_key_prefix="/docs").vault_key_prefix == "docs/"
        assert ApiSettings(vault_key_prefix="").vault_key_prefix == ""

    def test_cors_origins_list(self):
        settings = ApiSettings(cors_origins="https://a.example.com, https://b.example.com,")
        assert settings.cors_origins_list == ["https://a.example.com", "https://b.example.com"]

    def test_concurrency_bounds(self):
        with pytest.raises(ValidationError):
            ApiSettings(max_concurrent_pdfs=0)

    def test_reads_environment_variables(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_PDFS", "9")
        monkeypatch.setenv("VAULT_BUCKET", "docs")
        monkeypatch.setenv("VAULT_ACCESS_KEY_ID", "id")
        monkeypatch.setenv("VAULT_SECRET_ACCESS_KEY", "secret")

        settings = ApiSettings()

        assert settings.max_concurrent_pdfs == 9
        assert settings.vault_configured is True


class TestProductionValidation:
    """Tests for validate_production_config and startup validation."""

    def test_development_has_no_issues(self):
        assert ApiSettings().validate_production_config() == []

    def test_production_issues(self):
        issues = ApiSettings(environment="production").validate_production_config()

        assert "CRITICAL: ADMIN_API_SECRET required in production" in issues
        assert any("CORS_ORIGINS" in issue for issue in issues)
        assert any("localhost MongoDB" in issue for issue in issues)
        assert any("Vault" in issue for issue in issues)

    def test_startup_fails_on_critical_issue(self):
        settings = ApiSettings(environment="production")
        with patch("pdf_api.config.get_settings", return_value=settings):
            with pytest.raises(ValueError, match="ADMIN_API_SECRET"):
                validate_config_on_startup()

    def test_startup_tolerates_warnings(self):
        settings = ApiSettings(environment="production", admin_api_secret="s3cure-Admin-Secret-2024")
        with patch("pdf_api.config.get_settings", return_value=settings):
            validate_config_on_startup()
