"""SQLModel database table models.

Every tenant shares one physical database and one schema. Tenant-owned
tables inherit ``TenantOwnedModel`` and must only be read or written through
``superkafe.storage.scoped.TenantScopedRepository``.
"""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, Index, func
from sqlmodel import Field, SQLModel

from superkafe.types import OrderStatus, TenantStatus

TRIAL_PERIOD_DAYS = 10


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _default_trial_expiry() -> datetime:
    return _utc_now() + timedelta(days=TRIAL_PERIOD_DAYS)


# Timestamps are stored as naive UTC in TIMESTAMP WITHOUT TIME ZONE columns.
NaiveDateTime = DateTime(timezone=False)


# ---------------------------------------------------------------------------
# Tenant directory
# ---------------------------------------------------------------------------


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    name: str
    slug: str = Field(unique=True)  # stored trimmed + lower-cased
    is_active: bool = Field(default=True, index=True)
    status: str = Field(default=TenantStatus.TRIAL, index=True)
    trial_expires_at: datetime = Field(
        default_factory=_default_trial_expiry, index=True, sa_type=NaiveDateTime
    )
    subscription_expires_at: datetime | None = Field(default=None, sa_type=NaiveDateTime)
    created_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)

    def is_trial_active(self, now: datetime | None = None) -> bool:
        if self.status != TenantStatus.TRIAL:
            return False
        return (now or _utc_now()) < self.trial_expires_at

    def trial_days_remaining(self, now: datetime | None = None) -> int:
        if self.status != TenantStatus.TRIAL:
            return 0
        remaining = self.trial_expires_at - (now or _utc_now())
        days = math.ceil(remaining.total_seconds() / 86400)
        return max(days, 0)

    def can_access_features(self, now: datetime | None = None) -> bool:
        if self.status == TenantStatus.PAID:
            return True
        return self.is_trial_active(now)


# Case-insensitive uniqueness: "Cafe-Kopi" and "cafe-kopi" collide.
Index("ux_tenants_slug_lower", func.lower(Tenant.slug), unique=True)


# ---------------------------------------------------------------------------
# Tenant-owned business data
# ---------------------------------------------------------------------------


class TenantOwnedModel(SQLModel):
    """Mixin for tables whose rows belong to exactly one tenant."""

    tenant_id: str = Field(foreign_key="tenants.id", index=True)


class MenuItem(TenantOwnedModel, table=True):
    __tablename__ = "menu_items"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    name: str = Field(index=True)
    category: str = ""
    price: int = 0  # smallest currency unit
    is_available: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)


class Order(TenantOwnedModel, table=True):
    __tablename__ = "orders"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    table_number: str = ""
    customer_name: str = ""
    status: str = Field(default=OrderStatus.PENDING, index=True)
    total: int = 0
    created_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)


# ---------------------------------------------------------------------------
# Security audit trail
# ---------------------------------------------------------------------------


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    tenant_id: str | None = Field(default=None, index=True)
    actor_id: str = ""
    action: str = Field(index=True)
    details_json: str = "{}"
    ip_address: str = ""
    correlation_id: str = ""
    created_at: datetime = Field(default_factory=_utc_now, sa_type=NaiveDateTime)
