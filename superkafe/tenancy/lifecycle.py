"""Subscription lifecycle gate for resolved tenants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from superkafe.models.database import _utc_now
from superkafe.types import TenantStatus

if TYPE_CHECKING:
    from superkafe.models.database import Tenant


@dataclass(frozen=True, slots=True)
class AccessDecision:
    allowed: bool
    reason: str
    status: str
    days_remaining: int = 0
    expires_at: datetime | None = None


def evaluate_access(tenant: Tenant, now: datetime | None = None) -> AccessDecision:
    """Decide whether a tenant's billing state lets it use the product."""
    now = now or _utc_now()
    status = str(tenant.status)

    if tenant.can_access_features(now):
        if status == TenantStatus.PAID:
            return AccessDecision(
                True, "paid", status, expires_at=tenant.subscription_expires_at
            )
        return AccessDecision(
            True,
            "trial_active",
            status,
            days_remaining=tenant.trial_days_remaining(now),
            expires_at=tenant.trial_expires_at,
        )

    if status == TenantStatus.TRIAL:
        return AccessDecision(False, "trial_expired", status, expires_at=tenant.trial_expires_at)

    if status in (TenantStatus.EXPIRED, TenantStatus.SUSPENDED):
        return AccessDecision(False, status, status)

    return AccessDecision(False, "unknown_status", status)
