"""FastAPI dependency injection and shared state."""

from __future__ import annotations

from collections.abc import Callable
from functools import lru_cache
from typing import TypeVar

import structlog
from fastapi import HTTPException, Request
from sqlmodel import SQLModel

from superkafe.audit.alerts import SecurityAlerter
from superkafe.config.settings import get_settings
from superkafe.storage.repositories.tenants import (
    DatabaseTenantDirectory,
    InMemoryTenantDirectory,
)
from superkafe.storage.scoped import TenantScopedRepository
from superkafe.tenancy.context import TenantContext
from superkafe.tenancy.lifecycle import AccessDecision, evaluate_access
from superkafe.tenancy.resolver import REJECTIONS, TenantResolver
from superkafe.types import RejectionCode

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=SQLModel)


@lru_cache
def get_directory() -> DatabaseTenantDirectory | InMemoryTenantDirectory:
    """Create the appropriate tenant directory based on settings."""
    settings = get_settings()
    if settings.use_database:
        from superkafe.storage.database import get_engine

        return DatabaseTenantDirectory(get_engine())
    return InMemoryTenantDirectory()


@lru_cache
def get_resolver() -> TenantResolver:
    settings = get_settings()
    audit = None
    if settings.use_database:
        from superkafe.audit.logger import AuditLogger
        from superkafe.storage.database import get_engine

        audit = AuditLogger(get_engine())
    alerter = SecurityAlerter(
        enabled=settings.security_alerts_enabled,
        cooldown_seconds=settings.security_alert_cooldown_seconds,
    )
    return TenantResolver(
        get_directory(),
        cache_ttl_seconds=settings.tenant_cache_ttl_seconds,
        audit=audit,
        alerter=alerter,
    )


async def get_tenant(request: Request) -> TenantContext:
    """Return the tenant resolved by ``TenantResolverMiddleware``."""
    tenant = getattr(request.state, "tenant", None)
    if tenant is None:
        rejection = REJECTIONS[RejectionCode.TENANT_HEADER_MISSING]
        raise HTTPException(status_code=rejection.status_code, detail=rejection.to_dict())
    return tenant


async def require_active_subscription(request: Request) -> AccessDecision:
    """Block tenants whose trial ran out or whose subscription lapsed."""
    tenant_ctx = await get_tenant(request)
    tenant = await get_directory().get_by_id(tenant_ctx.tenant_id)
    if tenant is None:
        rejection = REJECTIONS[RejectionCode.TENANT_NOT_FOUND]
        raise HTTPException(status_code=rejection.status_code, detail=rejection.to_dict())

    decision = evaluate_access(tenant)
    if not decision.allowed:
        logger.warning(
            "tenant_access_blocked",
            tenant_slug=tenant_ctx.slug,
            reason=decision.reason,
            status=decision.status,
        )
        rejection = REJECTIONS[RejectionCode.TENANT_INACTIVE]
        raise HTTPException(
            status_code=rejection.status_code,
            detail={**rejection.to_dict(), "reason": decision.reason},
        )
    return decision


def scoped_repository(model: type[M]) -> Callable[[], TenantScopedRepository[M]]:
    """Dependency factory yielding a tenant-scoped repository for ``model``."""

    def _dependency() -> TenantScopedRepository[M]:
        from superkafe.storage.database import get_engine

        return TenantScopedRepository(get_engine(), model)

    return _dependency


def reset_state() -> None:
    """Drop cached singletons (tests and settings reloads)."""
    get_resolver.cache_clear()
    get_directory.cache_clear()
