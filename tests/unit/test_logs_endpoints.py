"""
Unit tests for usage log endpoints.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from pdf_api.app import app
from pdf_api.dependencies import get_api_key_repository, get_log_repository, get_rate_limiter
from pdf_api.rate_limiter import SlidingWindowRateLimiter


@pytest.fixture
def logs():
    return MagicMock()


@pytest.fixture
def client(logs, api_key_doc):
    api_keys = MagicMock()
    api_keys.find_by_key_id.return_value = api_key_doc
    limiter = SlidingWindowRateLimiter()
    app.dependency_overrides[get_api_key_repository] = lambda: api_keys
    app.dependency_overrides[get_log_repository] = lambda: logs
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth(raw_api_key):
    return {"X-API-Key": raw_api_key}


class TestListLogs:
    """Tests for GET /v1/logs."""

    def test_list_is_tenant_scoped(self, client, auth, logs):
        log_id = ObjectId()
        logs.list.return_value = ([{"_id": log_id, "status": "success", "timestamp": datetime(2024, 1, 2)}], 1)

        response = client.get("/v1/logs?status=success&search=req-&limit=5", headers=auth)

        assert response.status_code == 200
        body = response.json()
        assert body["data"][0]["id"] == str(log_id)
        assert body["data"][0]["timestamp"] == "2024-01-02T00:00:00+00:00"
        assert body["pagination"]["limit"] == 5
        args, kwargs = logs.list.call_args
        assert args[:2] == ("company-1", "64b7f0c2a1b2c3d4e5f60718")
        assert kwargs["status"] == "success"
        assert kwargs["search"] == "req-"

    def test_rejects_unknown_status(self, client, auth):
        assert client.get("/v1/logs?status=weird", headers=auth).status_code == 422

    def test_requires_api_key(self, client):
        assert client.get("/v1/logs").status_code == 401


class TestStats:
    """Tests for GET /v1/logs/stats/summary."""

    def test_summary(self, client, auth, logs):
        logs.stats.return_value = {"totalLogs": 2, "successRate": 50.0}

        response = client.get("/v1/logs/stats/summary?start_date=2024-01-01T00:00:00", headers=auth)

        assert response.json()["data"] == {"totalLogs": 2, "successRate": 50.0}
        start = logs.stats.call_args[0][2]
        assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestDateRange:
    """Tests for GET /v1/logs/date-range."""

    def test_range(self, client, auth, logs):
        logs.list.return_value = ([], 0)
        response = client.get(
            "/v1/logs/date-range?start_date=2024-01-01T00:00:00Z&end_date=2024-01-31T23:59:59Z",
            headers=auth,
        )
        assert response.status_code == 200
        assert response.json()["range"]["start"].startswith("2024-01-01")
        kwargs = logs.list.call_args.kwargs
        assert kwargs["start"] < kwargs["end"]

    def test_start_after_end(self, client, auth):
        response = client.get(
            "/v1/logs/date-range?start_date=2024-02-01T00:00:00Z&end_date=2024-01-01T00:00:00Z",
            headers=auth,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_OPTIONS"

    def test_dates_required(self, client, auth):
        assert client.get("/v1/logs/date-range", headers=auth).status_code == 422


class TestSingleLog:
    """Tests for GET/DELETE /v1/logs/{log_id}."""

    def test_get(self, client, auth, logs):
        log_id = ObjectId()
        logs.find_for_tenant.return_value = {"_id": log_id, "requestId": "req-1"}
        response = client.get(f"/v1/logs/{log_id}", headers=auth)
        assert response.json()["data"]["requestId"] == "req-1"

    def test_get_not_found(self, client, auth, logs):
        logs.find_for_tenant.return_value = None
        assert client.get(f"/v1/logs/{ObjectId()}", headers=auth).status_code == 404

    def test_delete(self, client, auth, logs):
        logs.delete_for_tenant.return_value = True
        response = client.delete(f"/v1/logs/{ObjectId()}", headers=auth)
        assert response.json() == {"success": True, "message": "Log deleted"}

    def test_delete_not_found(self, client, auth, logs):
        logs.delete_for_tenant.return_value = False
        assert client.delete(f"/v1/logs/{ObjectId()}", headers=auth).status_code == 404
