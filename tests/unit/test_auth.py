"""
Unit tests for API key and admin token authentication.

A minimal FastAPI app exposes one route per scheme so the dependencies run
exactly as they do in the real routers.
"""

import hmac
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from pdf_api.auth import ApiKeyContext, require_api_key, require_permission, verify_admin_token
from pdf_api.config import ApiSettings
from pdf_api.dependencies import get_api_key_repository, get_rate_limiter
from pdf_api.errors import register_exception_handlers
from pdf_api.rate_limiter import SlidingWindowRateLimiter

ADMIN_SECRET = "s3cure-Admin-Secret-2024"


def make_app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/whoami")
    def whoami(api_key: ApiKeyContext = Depends(require_api_key)):
        return {"key_id": api_key.key_id, "company_id": api_key.company_id}

    @app.get("/url-only")
    def url_only(api_key: ApiKeyContext = Depends(require_permission("url_to_pdf"))):
        return {"ok": True}

    @app.get("/admin", dependencies=[Depends(verify_admin_token)])
    def admin():
        return {"ok": True}

    return app


@pytest.fixture
def repository(api_key_doc):
    repo = MagicMock()
    repo.find_by_key_id.return_value = api_key_doc
    return repo


@pytest.fixture
def client(repository):
    app = make_app()
    limiter = SlidingWindowRateLimiter()
    app.dependency_overrides[get_api_key_repository] = lambda: repository
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    return TestClient(app)


def bearer(raw_key):
    return {"Authorization": f"Bearer {raw_key}"}


class TestApiKeyAuth:
    """Tests for require_api_key."""

    def test_valid_bearer_key(self, client, raw_api_key, repository, api_key_doc):
        response = client.get("/whoami", headers=bearer(raw_api_key))

        assert response.status_code == 200
        assert response.json() == {"key_id": api_key_doc["keyId"], "company_id": "company-1"}
        repository.find_by_key_id.assert_called_once_with(api_key_doc["keyId"])
        _, usage = repository.save_usage.call_args[0]
        assert usage["totalRequests"] == 1
        assert usage["lastUsedUserAgent"] == "testclient"

    def test_x_api_key_header(self, client, raw_api_key):
        response = client.get("/whoami", headers={"X-API-Key": raw_api_key})
        assert response.status_code == 200

    def test_missing_key(self, client):
        response = client.get("/whoami")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_malformed_key(self, client):
        response = client.get("/whoami", headers=bearer("not-a-key"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_API_KEY"

    def test_unknown_key(self, client, raw_api_key, repository):
        repository.find_by_key_id.return_value = None
        response = client.get("/whoami", headers=bearer(raw_api_key))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_API_KEY"

    def test_prefix_mismatch(self, client, raw_api_key):
        response = client.get("/whoami", headers=bearer(raw_api_key.replace("pk_live_", "pk_test_", 1)))
        assert response.status_code == 401

    def test_wrong_secret_records_failed_attempt(self, client, raw_api_key, repository, api_key_doc):
        response = client.get("/whoami", headers=bearer(raw_api_key[:-4] + "XXXX"))
        assert response.status_code == 401
        repository.record_failed_attempt.assert_called_once_with(api_key_doc["_id"])
        repository.save_usage.assert_not_called()

    def test_inactive_key(self, client, raw_api_key, api_key_doc):
        api_key_doc.update({"status": "inactive", "isActive": False})
        response = client.get("/whoami", headers=bearer(raw_api_key))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "API_KEY_INACTIVE"

    def test_expired_key_is_marked_expired(self, client, raw_api_key, repository, api_key_doc):
        api_key_doc["expiresAt"] = datetime.now(timezone.utc) - timedelta(minutes=1)
        response = client.get("/whoami", headers=bearer(raw_api_key))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "API_KEY_EXPIRED"
        _, fields = repository.update_fields.call_args[0]
        assert fields["status"] == "expired"

    def test_ip_whitelist(self, client, raw_api_key, api_key_doc):
        api_key_doc["allowedIPs"] = ["10.0.0.0/8"]

        blocked = client.get("/whoami", headers={**bearer(raw_api_key), "X-Forwarded-For": "8.8.8.8"})
        allowed = client.get("/whoami", headers={**bearer(raw_api_key), "X-Forwarded-For": "10.1.2.3, 8.8.8.8"})

        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "IP_NOT_ALLOWED"
        assert allowed.status_code == 200

    def test_daily_limit(self, client, raw_api_key, api_key_doc):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        api_key_doc["rateLimits"]["requestsPerDay"] = 5
        api_key_doc["usage"]["dailyUsage"] = [{"date": today, "requests": 5, "successful": 5, "failed": 0}]

        response = client.get("/whoami", headers=bearer(raw_api_key))

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) >= 1

    def test_per_minute_limit(self, client, raw_api_key, api_key_doc):
        api_key_doc["rateLimits"]["requestsPerMinute"] = 1

        first = client.get("/whoami", headers=bearer(raw_api_key))
        second = client.get("/whoami", headers=bearer(raw_api_key))

        assert first.status_code == 200
        assert second.status_code == 429
        assert "Retry-After" in second.headers

    def test_missing_permission(self, client, raw_api_key):
        response = client.get("/url-only", headers=bearer(raw_api_key))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "INSUFFICIENT_PERMISSIONS"

    def test_admin_permission_satisfies_any_requirement(self, client, raw_api_key, api_key_doc):
        api_key_doc["permissions"] = ["admin"]
        assert client.get("/url-only", headers=bearer(raw_api_key)).status_code == 200


class TestAdminToken:
    """Tests for verify_admin_token."""

    def test_open_in_development_without_secret(self, client):
        assert client.get("/admin").status_code == 200

    def test_requires_secret_when_configured(self, client):
        settings = ApiSettings(admin_api_secret=ADMIN_SECRET)
        with patch("pdf_api.auth.get_settings", return_value=settings):
            missing = client.get("/admin")
            wrong = client.get("/admin", headers={"Authorization": "Bearer wrong-token"})
            right = client.get("/admin", headers={"Authorization": f"Bearer {ADMIN_SECRET}"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200

    def test_secret_compared_in_constant_time(self, client):
        settings = ApiSettings(admin_api_secret=ADMIN_SECRET)
        with patch("pdf_api.auth.get_settings", return_value=settings), \
                patch("pdf_api.auth.hmac.compare_digest", wraps=hmac.compare_digest) as mock_compare:
            response = client.get("/admin", headers={"Authorization": "Bearer wrong-token"})

        assert response.status_code == 401
        mock_compare.assert_called_once_with(b"wrong-token", ADMIN_SECRET.encode("utf-8"))

    def test_non_ascii_token_is_rejected(self, client):
        settings = ApiSettings(admin_api_secret=ADMIN_SECRET)
        with patch("pdf_api.auth.get_settings", return_value=settings):
            response = client.get("/admin", headers={"Authorization": "Bearer tökén".encode("utf-8")})
        assert response.status_code == 401

    def test_production_without_secret_is_server_error(self, client):
        settings = ApiSettings(environment="production")
        with patch("pdf_api.auth.get_settings", return_value=settings):
            response = client.get("/admin")
        assert response.status_code == 500
        assert response.json()["detail"] == "Server authentication not configured"
