"""
PDF API Configuration Module

Centralized configuration management with Pydantic validation.
All environment variables are validated at startup to catch misconfigurations early.
"""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ApiSettings(BaseSettings):
    """
    PDF API configuration with validation.

    All settings can be overridden via environment variables.
    Validation happens at startup to fail fast on misconfiguration.
    """

    # === Environment & Security ===
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production"
    )
    admin_api_secret: Optional[str] = Field(
        default=None,
        min_length=16,
        description="Shared secret for API key management endpoints (min 16 chars)"
    )
    cors_origins: str = Field(
        default="",
        description="Comma-separated list of allowed CORS origins"
    )

    # === Rendering ===
    max_concurrent_pdfs: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum concurrent Chromium renders (1-50)"
    )
    playwright_timeout: int = Field(
        default=30000,
        ge=1000,
        le=300000,
        description="Navigation/render timeout in milliseconds"
    )
    playwright_headless: bool = Field(
        default=True,
        description="Run Chromium headless"
    )
    chromium_executable_path: Optional[str] = Field(
        default=None,
        description="Use a system Chromium instead of the Playwright bundled build"
    )
    request_timeout_seconds: int = Field(
        default=300,
        ge=10,
        le=900,
        description="Upper bound for a whole conversion request in seconds"
    )

    # === Result cache ===
    pdf_cache_max_entries: int = Field(
        default=100,
        ge=0,
        le=10000,
        description="Maximum cached PDFs (0 disables the cache)"
    )
    pdf_cache_ttl_seconds: int = Field(
        default=600,
        ge=1,
        description="Seconds a cached PDF stays valid"
    )

    # === AI layout repair (Gemini) ===
    gemini_api_key: Optional[str] = Field(
        default=None,
        description="Google Gemini API key for layout repair"
    )
    gemini_model: str = Field(
        default="gemini-2.0-flash",
        description="Gemini model used for layout repair"
    )
    gemini_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Gemini request timeout in seconds"
    )

    # === Vault (S3-compatible object storage) ===
    vault_bucket: Optional[str] = Field(default=None, description="Bucket name")
    vault_endpoint_url: Optional[str] = Field(
        default=None,
        description="S3-compatible endpoint, e.g. https://<account>.r2.cloudflarestorage.com"
    )
    vault_region: str = Field(default="auto", description="Bucket region")
    vault_access_key_id: Optional[str] = Field(default=None, description="Access key id")
    vault_secret_access_key: Optional[str] = Field(default=None, description="Secret access key")
    vault_key_prefix: str = Field(default="pdfs/", description="Object key prefix")
    vault_signed_url_ttl_days: int = Field(
        default=7,
        ge=1,
        le=7,
        description="Lifetime of pre-signed download URLs (SigV4 allows up to 7 days)"
    )

    # === MongoDB ===
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URI"
    )
    mongo_db_name: str = Field(
        default="pdf_api",
        description="MongoDB database name"
    )

    # === Redis (Optional) ===
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for shared rate limiting (optional)"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is a known value."""
        allowed = {"development", "staging", "production"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of: {', '.join(sorted(allowed))}")
        return v_lower

    @field_validator("admin_api_secret")
    @classmethod
    def validate_secret_strength(cls, v: Optional[str]) -> Optional[str]:
        """Reject obviously weak admin secrets."""
        if v is None:
            return None
        weak_secrets = {"secret", "password", "changeme", "adminadminadmin!"}
        if v.lower() in weak_secrets or len(set(v)) < 4:
            raise ValueError("Admin secret is too weak - use a secure random string")
        return v

    @field_validator("mongodb_uri")
    @classmethod
    def validate_mongodb_uri(cls, v: str) -> str:
        """Basic URI format validation."""
        if not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError(f"Invalid MongoDB URI format: {v}")
        return v

    @field_validator("vault_endpoint_url")
    @classmethod
    def validate_endpoint_url(cls, v: Optional[str]) -> Optional[str]:
        """Endpoint must be an http(s) URL when given."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid vault endpoint URL: {v}")
        return v or None

    @field_validator("vault_key_prefix")
    @classmethod
    def normalize_key_prefix(cls, v: str) -> str:
        v = v.strip().lstrip("/")
        if v and not v.endswith("/"):
            v += "/"
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def auth_required(self) -> bool:
        """Check if admin authentication is required."""
        return self.is_production or self.admin_api_secret is not None

    @property
    def vault_configured(self) -> bool:
        """True when bucket and credentials are all present."""
        return bool(
            self.vault_bucket
            and self.vault_access_key_id
            and self.vault_secret_access_key
        )

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration is suitable for production.

        Returns list of warning/error messages.
        """
        issues = []

        if self.is_production:
            if not self.admin_api_secret:
                issues.append("CRITICAL: ADMIN_API_SECRET required in production")
            if not self.cors_origins:
                issues.append("WARNING: CORS_ORIGINS not configured")
            if "localhost" in self.mongodb_uri:
                issues.append("WARNING: Using localhost MongoDB in production")
            if not self.vault_configured:
                issues.append("WARNING: Vault storage not configured, save_to_vault requests will fail")

        return issues

    class Config:
        env_prefix = ""
        case_sensitive = False


@lru_cache()
def get_settings() -> ApiSettings:
    """
    Get cached settings instance.

    Settings are loaded once and cached for performance.
    Use this function to access configuration throughout the app.
    """
    return ApiSettings()


def validate_config_on_startup() -> None:
    """
    Validate configuration at application startup.

    Raises ValueError with details if config is invalid.
    Logs warnings for non-critical issues.
    """
    try:
        settings = get_settings()
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")

    for issue in settings.validate_production_config():
        if issue.startswith("CRITICAL"):
            raise ValueError(issue)
        logger.warning(issue)

    # Log loaded configuration (redact secrets)
    logger.info(f"Configuration loaded: environment={settings.environment}")
    logger.info(f"  max_concurrent_pdfs={settings.max_concurrent_pdfs}")
    logger.info(f"  playwright_timeout={settings.playwright_timeout}ms")
    logger.info(f"  pdf_cache={settings.pdf_cache_max_entries} entries / {settings.pdf_cache_ttl_seconds}s")
    logger.info(f"  mongodb_uri={'*****' if 'localhost' not in settings.mongodb_uri else settings.mongodb_uri}")
    logger.info(f"  vault_configured={settings.vault_configured}")
    logger.info(f"  layout_repair_enabled={settings.gemini_api_key is not None}")
    logger.info(f"  auth_required={settings.auth_required}")


# Convenience exports
settings = get_settings()
