"""Tenant directory: durable registry of tenant records.

Two implementations share one interface: ``DatabaseTenantDirectory`` for the
shared PostgreSQL store and ``InMemoryTenantDirectory`` for single-process
development. Every mutation notifies registered listeners with the affected
slug so caches in front of the directory can drop stale entries.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from superkafe.exceptions import DuplicateSlugError, InvalidSlugError
from superkafe.models.database import TRIAL_PERIOD_DAYS, Tenant, _utc_now
from superkafe.tenancy.slug import normalize_slug, validate_slug
from superkafe.types import LogCategory, TenantStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

InvalidationListener = Callable[[str], None]


class _DirectoryEvents:
    def __init__(self) -> None:
        self._listeners: list[InvalidationListener] = []

    def on_change(self, listener: InvalidationListener) -> None:
        """Register a callback invoked with the slug of every mutated tenant."""
        self._listeners.append(listener)

    def _notify(self, slug: str) -> None:
        for listener in self._listeners:
            listener(slug)


def _checked_slug(slug: str) -> str:
    result = validate_slug(slug)
    if not result.valid:
        raise InvalidSlugError(result.reason or "Invalid slug")
    return normalize_slug(slug)


class DatabaseTenantDirectory(_DirectoryEvents):
    """PostgreSQL-backed tenant directory."""

    def __init__(self, engine: AsyncEngine) -> None:
        super().__init__()
        self._engine = engine

    async def get_active_by_slug(self, slug: str) -> Tenant | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(Tenant).where(
                func.lower(Tenant.slug) == normalize_slug(slug),
                col(Tenant.is_active).is_(True),
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_by_slug(self, slug: str) -> Tenant | None:
        async with AsyncSession(self._engine) as session:
            stmt = select(Tenant).where(func.lower(Tenant.slug) == normalize_slug(slug))
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_by_id(self, tenant_id: str) -> Tenant | None:
        async with AsyncSession(self._engine) as session:
            return await session.get(Tenant, tenant_id)

    async def list_active(self) -> list[Tenant]:
        async with AsyncSession(self._engine) as session:
            stmt = (
                select(Tenant)
                .where(col(Tenant.is_active).is_(True))
                .order_by(col(Tenant.created_at))
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create(
        self,
        name: str,
        slug: str,
        trial_days: int = TRIAL_PERIOD_DAYS,
    ) -> Tenant:
        normalized = _checked_slug(slug)
        if await self.get_by_slug(normalized) is not None:
            raise DuplicateSlugError(f"Slug '{normalized}' is already registered")

        now = _utc_now()
        tenant = Tenant(
            name=name.strip(),
            slug=normalized,
            status=TenantStatus.TRIAL,
            trial_expires_at=now + timedelta(days=trial_days),
            created_at=now,
            updated_at=now,
        )
        async with AsyncSession(self._engine) as session:
            session.add(tenant)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateSlugError(f"Slug '{normalized}' is already registered") from exc
            await session.refresh(tenant)

        logger.info(
            "tenant_created",
            category=LogCategory.TENANT_DIRECTORY,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
        )
        self._notify(tenant.slug)
        return tenant

    async def deactivate(self, tenant_id: str) -> Tenant | None:
        """Soft-deactivate a tenant. Rows are never hard-deleted."""
        async with AsyncSession(self._engine) as session:
            tenant = await session.get(Tenant, tenant_id)
            if not tenant:
                return None
            tenant.is_active = False
            tenant.updated_at = _utc_now()
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)

        logger.info(
            "tenant_deactivated",
            category=LogCategory.TENANT_DIRECTORY,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
        )
        self._notify(tenant.slug)
        return tenant

    async def set_status(
        self,
        tenant_id: str,
        status: TenantStatus,
        subscription_expires_at: datetime | None = None,
    ) -> Tenant | None:
        """Apply a billing lifecycle transition."""
        async with AsyncSession(self._engine) as session:
            tenant = await session.get(Tenant, tenant_id)
            if not tenant:
                return None
            tenant.status = status
            if subscription_expires_at is not None:
                tenant.subscription_expires_at = subscription_expires_at
            tenant.updated_at = _utc_now()
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)

        logger.info(
            "tenant_status_changed",
            category=LogCategory.TENANT_DIRECTORY,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
            status=str(status),
        )
        self._notify(tenant.slug)
        return tenant


class InMemoryTenantDirectory(_DirectoryEvents):
    """In-memory tenant directory. Replaced by PostgreSQL in production."""

    def __init__(self) -> None:
        super().__init__()
        self._tenants: dict[str, Tenant] = {}

    def _find(self, slug: str) -> Tenant | None:
        normalized = normalize_slug(slug)
        for tenant in self._tenants.values():
            if tenant.slug.lower() == normalized:
                return tenant
        return None

    async def get_active_by_slug(self, slug: str) -> Tenant | None:
        tenant = self._find(slug)
        if tenant and tenant.is_active:
            return tenant
        return None

    async def get_by_slug(self, slug: str) -> Tenant | None:
        return self._find(slug)

    async def get_by_id(self, tenant_id: str) -> Tenant | None:
        return self._tenants.get(tenant_id)

    async def list_active(self) -> list[Tenant]:
        return [t for t in self._tenants.values() if t.is_active]

    async def create(
        self,
        name: str,
        slug: str,
        trial_days: int = TRIAL_PERIOD_DAYS,
    ) -> Tenant:
        normalized = _checked_slug(slug)
        if self._find(normalized) is not None:
            raise DuplicateSlugError(f"Slug '{normalized}' is already registered")
        now = _utc_now()
        tenant = Tenant(
            name=name.strip(),
            slug=normalized,
            status=TenantStatus.TRIAL,
            trial_expires_at=now + timedelta(days=trial_days),
            created_at=now,
            updated_at=now,
        )
        self._tenants[tenant.id] = tenant
        logger.info(
            "tenant_created",
            category=LogCategory.TENANT_DIRECTORY,
            tenant_id=tenant.id,
            tenant_slug=tenant.slug,
        )
        self._notify(tenant.slug)
        return tenant

    async def deactivate(self, tenant_id: str) -> Tenant | None:
        tenant = self._tenants.get(tenant_id)
        if not tenant:
            return None
        tenant.is_active = False
        tenant.updated_at = _utc_now()
        self._notify(tenant.slug)
        return tenant

    async def set_status(
        self,
        tenant_id: str,
        status: TenantStatus,
        subscription_expires_at: datetime | None = None,
    ) -> Tenant | None:
        tenant = self._tenants.get(tenant_id)
        if not tenant:
            return None
        tenant.status = status
        if subscription_expires_at is not None:
            tenant.subscription_expires_at = subscription_expires_at
        tenant.updated_at = _utc_now()
        self._notify(tenant.slug)
        return tenant
