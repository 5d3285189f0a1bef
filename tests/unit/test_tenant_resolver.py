"""Unit tests for TenantResolver and its cache."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest
from structlog.testing import capture_logs

from superkafe.audit.alerts import SecurityAlerter
from superkafe.models.database import Tenant
from superkafe.storage.repositories.tenants import InMemoryTenantDirectory
from superkafe.tenancy import context as context_module
from superkafe.tenancy.context import TenantContext
from superkafe.tenancy.resolver import (
    AuthenticatedCaller,
    ResolutionOutcome,
    TenantCache,
    TenantResolver,
)
from superkafe.types import LogCategory, RejectionCode


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _CountingDirectory:
    """Wraps a directory and counts lookups."""

    def __init__(self, inner: InMemoryTenantDirectory) -> None:
        self._inner = inner
        self.lookups = 0

    async def get_active_by_slug(self, slug: str) -> Tenant | None:
        self.lookups += 1
        return await self._inner.get_active_by_slug(slug)


class _BrokenDirectory:
    async def get_active_by_slug(self, slug: str) -> Tenant | None:
        raise ConnectionError("database unreachable")


class _RecordingAudit:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    async def log(self, **kwargs: Any) -> None:
        self.entries.append(kwargs)


async def _resolve_isolated(
    resolver: TenantResolver, identifier: str | None, **kwargs: Any
) -> tuple[ResolutionOutcome, TenantContext | None]:
    """Resolve in a child task and report the context that task ended with."""

    async def _run() -> tuple[ResolutionOutcome, TenantContext | None]:
        outcome = await resolver.resolve(identifier, **kwargs)
        return outcome, context_module._current_tenant.get()

    return await asyncio.create_task(_run())


@pytest.fixture()
async def memory_directory() -> InMemoryTenantDirectory:
    directory = InMemoryTenantDirectory()
    await directory.create(name="Cafe Kopi", slug="cafe-kopi")
    await directory.create(name="Warkop Jaya", slug="warkop-jaya")
    return directory


@pytest.mark.unit
class TestResolveAccepts:
    @pytest.mark.parametrize(
        "identifier", ["cafe-kopi", "Cafe-Kopi", "CAFE-KOPI", "  cafe-kopi  ", "cAfE-kOpI"]
    )
    async def test_any_casing_resolves_stored_tenant(
        self, memory_directory: InMemoryTenantDirectory, identifier: str
    ) -> None:
        stored = await memory_directory.get_by_slug("cafe-kopi")
        assert stored is not None
        resolver = TenantResolver(memory_directory)
        outcome, active = await _resolve_isolated(resolver, identifier)
        assert outcome.accepted
        assert outcome.context is not None
        assert outcome.context.tenant_id == stored.id
        assert outcome.context.slug == "cafe-kopi"
        assert outcome.context.name == "Cafe Kopi"
        assert active == outcome.context

    async def test_correlation_id_is_attached(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        outcome, _ = await _resolve_isolated(resolver, "cafe-kopi", correlation_id="req-42")
        assert outcome.context is not None
        assert outcome.context.correlation_id == "req-42"

    async def test_correlation_id_generated_when_absent(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        outcome, _ = await _resolve_isolated(resolver, "cafe-kopi")
        assert outcome.context is not None
        assert outcome.context.correlation_id

    async def test_affiliated_caller_accepted(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        caller = AuthenticatedCaller(id="u1", email="a@kopi.id", tenant_affiliation="Cafe-Kopi")
        outcome, _ = await _resolve_isolated(resolver, "cafe-kopi", caller=caller)
        assert outcome.accepted

    async def test_success_is_logged_with_duration(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        with capture_logs() as logs:
            await _resolve_isolated(resolver, "cafe-kopi", correlation_id="req-1")
        resolved = [e for e in logs if e["event"] == "tenant_resolved"]
        assert len(resolved) == 1
        assert resolved[0]["category"] == LogCategory.TENANT_RESOLVER
        assert resolved[0]["correlation_id"] == "req-1"
        assert "duration_ms" in resolved[0]


@pytest.mark.unit
class TestResolveRejects:
    @pytest.mark.parametrize("identifier", [None, "", "   "])
    async def test_missing_identifier(
        self, memory_directory: InMemoryTenantDirectory, identifier: str | None
    ) -> None:
        resolver = TenantResolver(memory_directory)
        with capture_logs() as logs:
            outcome, active = await _resolve_isolated(resolver, identifier)
        assert outcome.rejection is not None
        assert outcome.rejection.status_code == 400
        assert outcome.rejection.code == RejectionCode.TENANT_HEADER_MISSING
        assert active is None
        assert any(e["event"] == "tenant_header_missing" for e in logs)

    @pytest.mark.parametrize("identifier", ["unknown-cafe", "nope", "cafe-kopi-2"])
    async def test_unknown_identifier(
        self, memory_directory: InMemoryTenantDirectory, identifier: str
    ) -> None:
        resolver = TenantResolver(memory_directory)
        outcome, active = await _resolve_isolated(resolver, identifier)
        assert outcome.rejection is not None
        assert outcome.rejection.status_code == 404
        assert outcome.rejection.code == RejectionCode.TENANT_NOT_FOUND
        assert active is None

    async def test_inactive_tenant_is_not_found(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        tenant = await memory_directory.get_by_slug("warkop-jaya")
        assert tenant is not None
        await memory_directory.deactivate(tenant.id)
        resolver = TenantResolver(memory_directory)
        outcome, active = await _resolve_isolated(resolver, "Warkop-Jaya")
        assert outcome.rejection is not None
        assert outcome.rejection.code == RejectionCode.TENANT_NOT_FOUND
        assert active is None

    async def test_rejection_body_has_no_internal_details(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        outcome, _ = await _resolve_isolated(resolver, "unknown-cafe")
        assert outcome.rejection is not None
        assert outcome.rejection.to_dict() == {
            "success": False,
            "code": "TENANT_NOT_FOUND",
            "message": "Tenant not found or inactive",
        }

    async def test_directory_failure_is_500(self) -> None:
        resolver = TenantResolver(_BrokenDirectory())
        with capture_logs() as logs:
            outcome, active = await _resolve_isolated(resolver, "cafe-kopi")
        assert outcome.rejection is not None
        assert outcome.rejection.status_code == 500
        assert outcome.rejection.code == RejectionCode.TENANT_RESOLUTION_ERROR
        assert "database" not in outcome.rejection.message
        assert active is None
        assert any(e["event"] == "tenant_resolution_error" for e in logs)

    @pytest.mark.parametrize("identifier", [None, "cafe-kopi", "nowhere"])
    async def test_metadata_keys_never_clash_with_log_fields(
        self, memory_directory: InMemoryTenantDirectory, identifier: str | None
    ) -> None:
        resolver = TenantResolver(memory_directory)
        metadata = {
            "reason": "x",
            "requested": "y",
            "error": "z",
            "duration_ms": 1,
            "tenant_slug": "other",
            "correlation_id": "spoofed",
        }
        with capture_logs() as logs:
            outcome, _ = await _resolve_isolated(
                resolver, identifier, metadata=metadata, correlation_id="req-7"
            )
        assert outcome.rejection is None or outcome.rejection.status_code in (400, 404)
        resolver_logs = [e for e in logs if e.get("category") == LogCategory.TENANT_RESOLVER]
        assert resolver_logs
        for entry in resolver_logs:
            assert entry["request"] == metadata
            assert entry["correlation_id"] == "req-7"

    async def test_directory_failure_logs_request_metadata(self) -> None:
        resolver = TenantResolver(_BrokenDirectory())
        with capture_logs() as logs:
            outcome, _ = await _resolve_isolated(
                resolver, "cafe-kopi", metadata={"path": "/api/menu", "error": "client"}
            )
        assert outcome.rejection is not None
        assert outcome.rejection.code == RejectionCode.TENANT_RESOLUTION_ERROR
        failure = next(e for e in logs if e["event"] == "tenant_resolution_error")
        assert failure["requested"] == "cafe-kopi"
        assert failure["error"] == "database unreachable"
        assert failure["request"] == {"path": "/api/menu", "error": "client"}


@pytest.mark.unit
class TestCrossTenantAccess:
    async def test_random_pairs_always_rejected(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        slugs = ["cafe-kopi", "warkop-jaya"]
        rng = random.Random(7)
        resolver = TenantResolver(memory_directory)
        for _ in range(20):
            affiliation, requested = rng.sample(slugs, 2)
            caller = AuthenticatedCaller(id="u1", email="a@b.c", tenant_affiliation=affiliation)
            outcome, active = await _resolve_isolated(
                resolver, requested.upper(), caller=caller
            )
            assert outcome.rejection is not None
            assert outcome.rejection.status_code == 403
            assert outcome.rejection.code == RejectionCode.CROSS_TENANT_ACCESS
            assert active is None

    async def test_caller_without_affiliation_rejected(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        caller = AuthenticatedCaller(id="u1", email="a@b.c")
        outcome, _ = await _resolve_isolated(resolver, "cafe-kopi", caller=caller)
        assert outcome.rejection is not None
        assert outcome.rejection.code == RejectionCode.CROSS_TENANT_ACCESS

    async def test_reports_security_event_alert_and_audit(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        audit = _RecordingAudit()
        alerter = SecurityAlerter()
        resolver = TenantResolver(memory_directory, audit=audit, alerter=alerter)  # type: ignore[arg-type]
        caller = AuthenticatedCaller(
            id="u1", email="owner@kopi.id", tenant_affiliation="cafe-kopi"
        )
        with capture_logs() as logs:
            await _resolve_isolated(
                resolver,
                "warkop-jaya",
                caller=caller,
                metadata={"path": "/api/tenant", "method": "GET", "ip": "10.0.0.1"},
                correlation_id="req-9",
            )

        security = [e for e in logs if e["event"] == "cross_tenant_access"]
        assert len(security) == 1
        assert security[0]["category"] == LogCategory.SECURITY
        assert security[0]["severity"] == "HIGH"
        assert security[0]["user_email"] == "owner@kopi.id"
        assert security[0]["requested_tenant"] == "warkop-jaya"
        assert security[0]["correlation_id"] == "req-9"

        assert alerter.count("CROSS_TENANT_ACCESS") == 1
        assert len(audit.entries) == 1
        assert audit.entries[0]["action"] == "cross_tenant_access"
        assert audit.entries[0]["actor_id"] == "u1"
        assert audit.entries[0]["ip_address"] == "10.0.0.1"

    async def test_metadata_cannot_overwrite_security_fields(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory, alerter=SecurityAlerter())
        caller = AuthenticatedCaller(
            id="u1", email="owner@kopi.id", tenant_affiliation="cafe-kopi"
        )
        metadata = {"user_email": "spoof@x.id", "correlation_id": "spoofed", "severity": "LOW"}
        with capture_logs() as logs:
            outcome, _ = await _resolve_isolated(
                resolver, "warkop-jaya", caller=caller, metadata=metadata, correlation_id="req-3"
            )
        assert outcome.rejection is not None
        assert outcome.rejection.code == RejectionCode.CROSS_TENANT_ACCESS
        security = next(e for e in logs if e["event"] == "cross_tenant_access")
        assert security["user_email"] == "owner@kopi.id"
        assert security["correlation_id"] == "req-3"
        assert security["severity"] == "HIGH"
        assert security["request"] == metadata


@pytest.mark.unit
class TestResolverCache:
    async def test_hits_are_cached(self, memory_directory: InMemoryTenantDirectory) -> None:
        directory = _CountingDirectory(memory_directory)
        resolver = TenantResolver(directory)
        for identifier in ("cafe-kopi", "CAFE-KOPI", "Cafe-Kopi"):
            outcome, _ = await _resolve_isolated(resolver, identifier)
            assert outcome.accepted
        assert directory.lookups == 1

    async def test_misses_are_not_cached(self, memory_directory: InMemoryTenantDirectory) -> None:
        directory = _CountingDirectory(memory_directory)
        resolver = TenantResolver(directory)
        await _resolve_isolated(resolver, "new-cafe")
        await memory_directory.create(name="New Cafe", slug="new-cafe")
        outcome, _ = await _resolve_isolated(resolver, "new-cafe")
        assert outcome.accepted
        assert directory.lookups == 2

    async def test_entries_expire(self, memory_directory: InMemoryTenantDirectory) -> None:
        clock = _FakeClock()
        directory = _CountingDirectory(memory_directory)
        resolver = TenantResolver(directory, cache_ttl_seconds=60, clock=clock)
        await _resolve_isolated(resolver, "cafe-kopi")
        clock.now += 61
        await _resolve_isolated(resolver, "cafe-kopi")
        assert directory.lookups == 2

    async def test_zero_ttl_disables_cache(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        directory = _CountingDirectory(memory_directory)
        resolver = TenantResolver(directory, cache_ttl_seconds=0)
        await _resolve_isolated(resolver, "cafe-kopi")
        await _resolve_isolated(resolver, "cafe-kopi")
        assert directory.lookups == 2
        assert len(resolver.cache) == 0

    async def test_deactivation_invalidates_cache(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory, cache_ttl_seconds=3600)
        outcome, _ = await _resolve_isolated(resolver, "cafe-kopi")
        assert outcome.accepted
        assert len(resolver.cache) == 1

        tenant = await memory_directory.get_by_slug("cafe-kopi")
        assert tenant is not None
        await memory_directory.deactivate(tenant.id)

        outcome, _ = await _resolve_isolated(resolver, "cafe-kopi")
        assert outcome.rejection is not None
        assert outcome.rejection.code == RejectionCode.TENANT_NOT_FOUND

    async def test_manual_invalidate_normalizes(
        self, memory_directory: InMemoryTenantDirectory
    ) -> None:
        resolver = TenantResolver(memory_directory)
        await _resolve_isolated(resolver, "cafe-kopi")
        resolver.invalidate(" Cafe-Kopi ")
        assert len(resolver.cache) == 0


@pytest.mark.unit
class TestTenantCache:
    def test_put_get_and_clear(self) -> None:
        cache = TenantCache(ttl_seconds=10)
        ctx = TenantContext(tenant_id="t1", slug="cafe-kopi")
        cache.put("cafe-kopi", ctx)
        assert cache.get("cafe-kopi") is ctx
        assert cache.get("other") is None
        cache.clear()
        assert len(cache) == 0

    def test_expired_entry_evicted(self) -> None:
        clock = _FakeClock()
        cache = TenantCache(ttl_seconds=5, clock=clock)
        cache.put("cafe-kopi", TenantContext(tenant_id="t1", slug="cafe-kopi"))
        clock.now += 5
        assert cache.get("cafe-kopi") is None
        assert len(cache) == 0
