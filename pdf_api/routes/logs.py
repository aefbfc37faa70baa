"""
Usage Log API Routes.

Tenant-scoped (company, else user) views of per-request usage logs:
- GET /v1/logs - Paginated list with status and search filters
- GET /v1/logs/stats/summary - Aggregate totals
- GET /v1/logs/date-range - Logs between two timestamps
- GET /v1/logs/{log_id} - Single log
- DELETE /v1/logs/{log_id} - Remove a log
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth import ApiKeyContext, require_api_key
from ..dependencies import get_log_repository
from ..errors import bad_request, not_found
from ..persistence import UsageLogRepository, pagination_info, serialize_document

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/logs", tags=["logs"])

STATUS_PATTERN = "^(success|failed|processing)$"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("")
def list_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None, pattern=STATUS_PATTERN),
    search: Optional[str] = Query(None, max_length=200),
    api_key: ApiKeyContext = Depends(require_api_key),
    logs: UsageLogRepository = Depends(get_log_repository),
):
    docs, total = logs.list(api_key.company_id, api_key.user_id, page, limit, status=status, search=search)
    return {
        "success": True,
        "data": serialize_document(docs),
        "pagination": pagination_info(page, limit, total),
    }


@router.get("/stats/summary")
def logs_summary(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    api_key: ApiKeyContext = Depends(require_api_key),
    logs: UsageLogRepository = Depends(get_log_repository),
):
    """Totals for the dashboard: counts, credits, sizes, average render time."""
    stats = logs.stats(api_key.company_id, api_key.user_id, _utc(start_date), _utc(end_date))
    return {"success": True, "data": stats}


@router.get("/date-range")
def logs_by_date_range(
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None, pattern=STATUS_PATTERN),
    api_key: ApiKeyContext = Depends(require_api_key),
    logs: UsageLogRepository = Depends(get_log_repository),
):
    start, end = _utc(start_date), _utc(end_date)
    if start > end:
        raise bad_request("start_date must be before end_date")

    docs, total = logs.list(api_key.company_id, api_key.user_id, page, limit, status=status, start=start, end=end)
    return {
        "success": True,
        "data": serialize_document(docs),
        "pagination": pagination_info(page, limit, total),
        "range": {"start": start.isoformat(), "end": end.isoformat()},
    }


@router.get("/{log_id}")
def get_log(
    log_id: str,
    api_key: ApiKeyContext = Depends(require_api_key),
    logs: UsageLogRepository = Depends(get_log_repository),
):
    doc = logs.find_for_tenant(log_id, api_key.company_id, api_key.user_id)
    if doc is None:
        raise not_found("Log")
    return {"success": True, "data": serialize_document(doc)}


@router.delete("/{log_id}")
def delete_log(
    log_id: str,
    api_key: ApiKeyContext = Depends(require_api_key),
    logs: UsageLogRepository = Depends(get_log_repository),
):
    if not logs.delete_for_tenant(log_id, api_key.company_id, api_key.user_id):
        raise not_found("Log")
    logger.info(f"Deleted log {log_id}")
    return {"success": True, "message": "Log deleted"}
