"""Running trusted internal jobs under a tenant context.

Background work has no inbound request to resolve, so it builds the
``TenantContext`` straight from the directory record and runs inside it.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from superkafe.models.database import _utc_now
from superkafe.tenancy.context import TenantContext, run_with_tenant_context
from superkafe.types import TenantStatus

if TYPE_CHECKING:
    from datetime import datetime

    from superkafe.models.database import Tenant

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def context_for(tenant: Tenant, correlation_id: str | None = None) -> TenantContext:
    return TenantContext(
        tenant_id=str(tenant.id),
        slug=tenant.slug,
        name=tenant.name,
        correlation_id=correlation_id,
    )


async def run_for_tenant(
    tenant: Tenant,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    ctx = context_for(tenant, correlation_id=f"job-{uuid.uuid4().hex}")
    return await run_with_tenant_context(ctx, fn, *args, **kwargs)


async def run_for_each_active_tenant(
    directory: Any,
    fn: Callable[[], Awaitable[T]],
    concurrency: int = 4,
) -> dict[str, T | BaseException]:
    """Run ``fn`` once per active tenant, each call under that tenant's context.

    Calls run concurrently (at most ``concurrency`` at a time). A failing
    tenant does not stop the others; its exception is returned in its slot.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def _one(tenant: Tenant) -> T:
        async with semaphore:
            return await run_for_tenant(tenant, fn)

    tenants = await directory.list_active()
    results = await asyncio.gather(*(_one(t) for t in tenants), return_exceptions=True)
    outcome: dict[str, T | BaseException] = {}
    for tenant, result in zip(tenants, results, strict=True):
        if isinstance(result, BaseException):
            logger.error("tenant_job_failed", tenant_slug=tenant.slug, error=str(result))
        outcome[tenant.slug] = result
    return outcome


async def expire_lapsed_trials(directory: Any, now: datetime | None = None) -> list[str]:
    """Move tenants whose trial ran out to ``expired``. Returns their slugs."""
    now = now or _utc_now()
    expired: list[str] = []
    for tenant in await directory.list_active():
        if tenant.status == TenantStatus.TRIAL and now >= tenant.trial_expires_at:
            await directory.set_status(tenant.id, TenantStatus.EXPIRED)
            expired.append(tenant.slug)
    if expired:
        logger.info("trials_expired", count=len(expired), tenants=expired)
    return expired
