"""
API Key Management Routes (admin token required).

- POST /v1/api-keys - Issue a key (raw key returned once)
- GET /v1/api-keys - List keys for a company/user
- GET /v1/api-keys/check-name - Name availability for a user
- PATCH /v1/api-keys/{api_key_id} - Edit name, permissions, limits, IPs
- POST /v1/api-keys/{api_key_id}/regenerate - Rotate the secret
- POST /v1/api-keys/{api_key_id}/deactivate - Disable
- POST /v1/api-keys/{api_key_id}/activate - Re-enable
- DELETE /v1/api-keys/{api_key_id} - Revoke (soft delete)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from .. import api_keys as keys
from ..auth import verify_admin_token
from ..dependencies import get_api_key_repository
from ..errors import ApiError, ErrorCode, bad_request, not_found
from ..models import ApiKeyCreatedResponse, ApiKeyCreateRequest, ApiKeyUpdateRequest
from ..persistence import ApiKeyRepository, pagination_info, serialize_document, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/api-keys",
    tags=["api-keys"],
    dependencies=[Depends(verify_admin_token)],
)


def _view(doc: Dict[str, Any]) -> Dict[str, Any]:
    return serialize_document(keys.public_view(doc))


def _load(repository: ApiKeyRepository, api_key_id: str) -> Dict[str, Any]:
    doc = repository.find_by_id(api_key_id)
    if doc is None:
        raise not_found("API key")
    return doc


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ApiKeyCreatedResponse)
def create_api_key(
    body: ApiKeyCreateRequest,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    """Create a key for a tenant. The raw key is never retrievable again."""
    if repository.name_exists(body.name, body.user_id):
        raise ApiError(ErrorCode.CONFLICT, f"An API key named '{body.name}' already exists")

    material = keys.generate_key_material()
    doc = keys.build_api_key_document(
        name=body.name,
        user_id=body.user_id,
        company_id=body.company_id,
        material=material,
        key_prefix=body.key_prefix,
        description=body.description,
        permissions=body.permissions,
        scopes=body.scopes,
        rate_limits=body.rate_limits.model_dump() if body.rate_limits else None,
        allowed_ips=body.allowed_ips,
        expires_in_days=body.expires_in_days,
        tags=body.tags,
    )
    doc = repository.insert(doc)
    logger.info(f"Created API key {keys.display_key(doc)} for company {body.company_id}")

    return ApiKeyCreatedResponse(
        api_key=keys.format_api_key(body.key_prefix, material.key_id, material.raw_secret),
        key=_view(doc),
    )


@router.get("")
def list_api_keys(
    company_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    docs, total = repository.list(company_id=company_id, user_id=user_id, page=page, limit=limit)
    return {
        "success": True,
        "data": [_view(doc) for doc in docs],
        "pagination": pagination_info(page, limit, total),
    }


@router.get("/check-name")
def check_name(
    name: str = Query(..., min_length=1, max_length=100),
    user_id: str = Query(..., min_length=1),
    exclude_id: Optional[str] = Query(None),
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    exists = repository.name_exists(name, user_id, exclude_id=exclude_id)
    return {"success": True, "available": not exists}


@router.patch("/{api_key_id}")
def update_api_key(
    api_key_id: str,
    body: ApiKeyUpdateRequest,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    doc = _load(repository, api_key_id)

    fields: Dict[str, Any] = {}
    if body.name is not None:
        if repository.name_exists(body.name, doc["userId"], exclude_id=api_key_id):
            raise ApiError(ErrorCode.CONFLICT, f"An API key named '{body.name}' already exists")
        fields["name"] = body.name.strip()
    if body.description is not None:
        fields["description"] = body.description
    if body.permissions is not None:
        fields["permissions"] = keys.validate_permissions(body.permissions)
    if body.scopes is not None:
        fields["scopes"] = keys.validate_scopes(body.scopes)
    if body.rate_limits is not None:
        fields["rateLimits"] = body.rate_limits.model_dump()
    if body.allowed_ips is not None:
        fields["allowedIPs"] = keys.validate_allowed_ips(body.allowed_ips)
    if body.tags is not None:
        fields["tags"] = body.tags

    if not fields:
        raise bad_request("No fields to update")

    updated = repository.update_fields(api_key_id, fields)
    logger.info(f"Updated API key {keys.display_key(doc)}: {sorted(fields)}")
    return {"success": True, "data": _view(updated)}


@router.post("/{api_key_id}/regenerate", response_model=ApiKeyCreatedResponse)
def regenerate_api_key(
    api_key_id: str,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    """Rotate the secret and key id; the previous key stops working immediately."""
    doc = _load(repository, api_key_id)
    if doc.get("status") == "revoked":
        raise ApiError(ErrorCode.CONFLICT, "Revoked API keys cannot be regenerated")

    material = keys.generate_key_material()
    updated = repository.update_fields(api_key_id, keys.rotation_update(material, doc))
    logger.info(f"Regenerated API key {keys.display_key(doc)} -> {keys.display_key(updated)}")

    return ApiKeyCreatedResponse(
        api_key=keys.format_api_key(doc["keyPrefix"], material.key_id, material.raw_secret),
        key=_view(updated),
    )


@router.post("/{api_key_id}/deactivate")
def deactivate_api_key(
    api_key_id: str,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    _load(repository, api_key_id)
    updated = repository.update_fields(api_key_id, {"status": "inactive", "isActive": False})
    return {"success": True, "data": _view(updated)}


@router.post("/{api_key_id}/activate")
def activate_api_key(
    api_key_id: str,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    doc = _load(repository, api_key_id)
    if doc.get("status") == "revoked":
        raise ApiError(ErrorCode.CONFLICT, "Revoked API keys cannot be reactivated")
    if keys.is_expired(doc):
        raise ApiError(ErrorCode.CONFLICT, "Expired API keys cannot be reactivated")
    updated = repository.update_fields(api_key_id, {"status": "active", "isActive": True})
    return {"success": True, "data": _view(updated)}


@router.delete("/{api_key_id}")
def delete_api_key(
    api_key_id: str,
    repository: ApiKeyRepository = Depends(get_api_key_repository),
):
    doc = _load(repository, api_key_id)
    repository.update_fields(api_key_id, {
        "status": "revoked",
        "isActive": False,
        "isDeleted": True,
        "deletedAt": utcnow(),
    })
    logger.info(f"Revoked API key {keys.display_key(doc)}")
    return {"success": True, "message": "API key revoked"}
