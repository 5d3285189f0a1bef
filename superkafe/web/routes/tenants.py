"""Tenant onboarding and current-tenant API routes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from superkafe.config.settings import get_settings
from superkafe.exceptions import DuplicateSlugError, InvalidSlugError
from superkafe.tenancy.context import TenantContext  # noqa: TC001
from superkafe.tenancy.lifecycle import evaluate_access
from superkafe.tenancy.slug import normalize_slug, validate_slug
from superkafe.web.dependencies import get_directory, get_tenant

if TYPE_CHECKING:
    from superkafe.models.database import Tenant

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["tenants"])


class RegisterTenantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=100)


class TenantResponse(BaseModel):
    id: str
    name: str
    slug: str
    status: str
    is_active: bool
    trial_expires_at: str
    trial_days_remaining: int


def _to_response(tenant: Tenant) -> dict[str, Any]:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "slug": tenant.slug,
        "status": str(tenant.status),
        "is_active": tenant.is_active,
        "trial_expires_at": tenant.trial_expires_at.isoformat(),
        "trial_days_remaining": tenant.trial_days_remaining(),
    }


@router.post("/tenants", status_code=201, response_model=TenantResponse)
async def register_tenant(body: RegisterTenantRequest) -> dict[str, Any]:
    settings = get_settings()
    try:
        tenant = await get_directory().create(
            name=body.name, slug=body.slug, trial_days=settings.trial_days
        )
    except InvalidSlugError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "INVALID_SLUG", "message": exc.reason}
        ) from exc
    except DuplicateSlugError as exc:
        raise HTTPException(
            status_code=409, detail={"code": "SLUG_TAKEN", "message": "Slug is already taken"}
        ) from exc
    return _to_response(tenant)


@router.get("/tenants/check-slug")
async def check_slug(slug: str = Query(...)) -> dict[str, Any]:
    result = validate_slug(slug)
    if not result.valid:
        return {"slug": normalize_slug(slug), "available": False, "reason": result.reason}
    taken = await get_directory().get_by_slug(slug) is not None
    return {
        "slug": normalize_slug(slug),
        "available": not taken,
        "reason": "Slug is already taken" if taken else None,
    }


@router.get("/tenant")
async def current_tenant(tenant: TenantContext = Depends(get_tenant)) -> dict[str, Any]:
    """Describe the resolved tenant and its billing state."""
    record = await get_directory().get_by_id(tenant.tenant_id)
    body: dict[str, Any] = {"tenant": tenant.to_dict()}
    if record is not None:
        decision = evaluate_access(record)
        body["access"] = {
            "allowed": decision.allowed,
            "reason": decision.reason,
            "status": decision.status,
            "days_remaining": decision.days_remaining,
        }
    return body
