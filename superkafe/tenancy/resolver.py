"""Tenant resolution: the boundary gate in front of all business logic.

``TenantResolver.resolve`` turns a caller-supplied tenant identifier (and an
optional pre-authenticated caller) into either a ``TenantContext`` installed
through the context carrier, or a rejection with a stable
``(status, code, message)`` triple. Rejections never carry internal ids or
emails; those only go to the structured logs.
"""

from __future__ import annotations

import dataclasses
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from superkafe.audit.logger import log_security_event
from superkafe.tenancy.context import TenantContext, set_tenant_context
from superkafe.tenancy.slug import normalize_slug
from superkafe.types import LogCategory, RejectionCode

if TYPE_CHECKING:
    from superkafe.audit.alerts import SecurityAlerter
    from superkafe.audit.logger import AuditLogger
    from superkafe.models.database import Tenant

logger = structlog.get_logger(__name__)


class TenantLookup(Protocol):
    async def get_active_by_slug(self, slug: str) -> Tenant | None: ...


@dataclass(frozen=True, slots=True)
class AuthenticatedCaller:
    """Caller record produced by upstream authentication."""

    id: str
    email: str
    tenant_affiliation: str | None = None


@dataclass(frozen=True, slots=True)
class TenantRejection:
    status_code: int
    code: RejectionCode
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "code": str(self.code), "message": self.message}


REJECTIONS: dict[RejectionCode, TenantRejection] = {
    RejectionCode.TENANT_HEADER_MISSING: TenantRejection(
        400, RejectionCode.TENANT_HEADER_MISSING, "Tenant identifier header is required"
    ),
    RejectionCode.TENANT_NOT_FOUND: TenantRejection(
        404, RejectionCode.TENANT_NOT_FOUND, "Tenant not found or inactive"
    ),
    RejectionCode.TENANT_INACTIVE: TenantRejection(
        403, RejectionCode.TENANT_INACTIVE, "Tenant access is suspended"
    ),
    RejectionCode.CROSS_TENANT_ACCESS: TenantRejection(
        403, RejectionCode.CROSS_TENANT_ACCESS, "Unauthorized access to tenant data"
    ),
    RejectionCode.TENANT_RESOLUTION_ERROR: TenantRejection(
        500, RejectionCode.TENANT_RESOLUTION_ERROR, "An error occurred while resolving the tenant"
    ),
}


@dataclass(frozen=True, slots=True)
class ResolutionOutcome:
    context: TenantContext | None = None
    rejection: TenantRejection | None = None

    @property
    def accepted(self) -> bool:
        return self.context is not None

    @classmethod
    def accept(cls, context: TenantContext) -> ResolutionOutcome:
        return cls(context=context)

    @classmethod
    def reject(cls, code: RejectionCode) -> ResolutionOutcome:
        return cls(rejection=REJECTIONS[code])


class TenantCache:
    """Short-lived cache of resolved tenants keyed by normalized slug.

    Only hits are cached, so a freshly registered tenant resolves at once.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, TenantContext]] = {}

    def get(self, slug: str) -> TenantContext | None:
        entry = self._entries.get(slug)
        if entry is None:
            return None
        expires_at, ctx = entry
        if self._clock() >= expires_at:
            del self._entries[slug]
            return None
        return ctx

    def put(self, slug: str, ctx: TenantContext) -> None:
        if self._ttl <= 0:
            return
        self._entries[slug] = (self._clock() + self._ttl, ctx)

    def invalidate(self, slug: str) -> None:
        self._entries.pop(normalize_slug(slug), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class TenantResolver:
    """Resolves and installs the tenant for one inbound operation."""

    def __init__(
        self,
        directory: TenantLookup,
        cache_ttl_seconds: float = 60.0,
        audit: AuditLogger | None = None,
        alerter: SecurityAlerter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._audit = audit
        self._alerter = alerter
        self.cache = TenantCache(cache_ttl_seconds, clock=clock)

        on_change = getattr(directory, "on_change", None)
        if on_change is not None:
            on_change(self.cache.invalidate)

    def invalidate(self, slug: str) -> None:
        """Drop a cached tenant, e.g. after deactivation or a billing change."""
        self.cache.invalidate(slug)

    async def _lookup(self, slug: str) -> TenantContext | None:
        cached = self.cache.get(slug)
        if cached is not None:
            return cached
        tenant = await self._directory.get_active_by_slug(slug)
        if tenant is None:
            return None
        ctx = TenantContext(tenant_id=str(tenant.id), slug=tenant.slug, name=tenant.name)
        self.cache.put(slug, ctx)
        return ctx

    async def resolve(
        self,
        identifier: str | None,
        caller: AuthenticatedCaller | None = None,
        metadata: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> ResolutionOutcome:
        started = time.perf_counter()
        correlation_id = correlation_id or uuid.uuid4().hex
        meta = dict(metadata or {})
        log = logger.bind(
            category=LogCategory.TENANT_RESOLVER, correlation_id=correlation_id, request=meta
        )

        slug: str | None = None
        try:
            if not identifier or not identifier.strip():
                log.warning("tenant_header_missing", reason="missing_identifier")
                return ResolutionOutcome.reject(RejectionCode.TENANT_HEADER_MISSING)

            slug = normalize_slug(identifier)
            resolved = await self._lookup(slug)
            if resolved is None:
                log.warning("tenant_not_found", reason="unknown_or_inactive", requested=slug)
                return ResolutionOutcome.reject(RejectionCode.TENANT_NOT_FOUND)

            if caller is not None and not self._affiliated(caller, resolved):
                await self._report_cross_tenant(caller, resolved, meta, correlation_id)
                return ResolutionOutcome.reject(RejectionCode.CROSS_TENANT_ACCESS)

            ctx = dataclasses.replace(resolved, correlation_id=correlation_id)
            set_tenant_context(ctx)
        except Exception as exc:
            log.exception(
                "tenant_resolution_error",
                requested=slug,
                error=str(exc),
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return ResolutionOutcome.reject(RejectionCode.TENANT_RESOLUTION_ERROR)

        log.info(
            "tenant_resolved",
            tenant_id=ctx.tenant_id,
            tenant_slug=ctx.slug,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return ResolutionOutcome.accept(ctx)

    @staticmethod
    def _affiliated(caller: AuthenticatedCaller, ctx: TenantContext) -> bool:
        # A caller without an affiliation is not affiliated with any tenant.
        if not caller.tenant_affiliation:
            return False
        return normalize_slug(caller.tenant_affiliation) == ctx.slug.lower()

    async def _report_cross_tenant(
        self,
        caller: AuthenticatedCaller,
        requested: TenantContext,
        meta: dict[str, Any],
        correlation_id: str,
    ) -> None:
        details = {
            "user_id": caller.id,
            "user_email": caller.email,
            "user_tenant": caller.tenant_affiliation,
            "requested_tenant": requested.slug,
            "requested_tenant_id": requested.tenant_id,
            "request": meta,
        }
        log_security_event("cross_tenant_access", correlation_id=correlation_id, **details)
        if self._alerter is not None:
            self._alerter.cross_tenant_access(correlation_id=correlation_id, **details)
        if self._audit is not None:
            await self._audit.log(
                action="cross_tenant_access",
                tenant_id=requested.tenant_id,
                actor_id=caller.id,
                details=details,
                ip_address=str(meta.get("ip", "")),
                correlation_id=correlation_id,
            )
