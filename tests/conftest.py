"""Shared test fixtures."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

import superkafe.models.database  # noqa: F401  register tables on the metadata
from superkafe.storage.repositories.tenants import DatabaseTenantDirectory
from superkafe.tenancy.context import TenantContext

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from superkafe.models.database import Tenant

os.environ.setdefault("USE_DATABASE", "false")


@pytest.fixture()
async def async_engine(tmp_path):
    """File-backed SQLite engine with all tables created.

    A file (not ``:memory:``) gives every session its own connection, the
    way a pooled PostgreSQL engine behaves, so interleaved sessions do not
    share one transaction.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'superkafe.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def directory(async_engine: AsyncEngine) -> DatabaseTenantDirectory:
    return DatabaseTenantDirectory(async_engine)


@pytest.fixture()
async def tenant_a(directory: DatabaseTenantDirectory) -> Tenant:
    return await directory.create(name="Cafe Kopi", slug="cafe-kopi")


@pytest.fixture()
async def tenant_b(directory: DatabaseTenantDirectory) -> Tenant:
    return await directory.create(name="Warkop Jaya", slug="warkop-jaya")


@pytest.fixture()
def ctx_a(tenant_a: Tenant) -> TenantContext:
    return TenantContext(tenant_id=tenant_a.id, slug=tenant_a.slug, name=tenant_a.name)


@pytest.fixture()
def ctx_b(tenant_b: Tenant) -> TenantContext:
    return TenantContext(tenant_id=tenant_b.id, slug=tenant_b.slug, name=tenant_b.name)


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch):
    """Create a fresh app instance backed by the in-memory tenant directory."""
    from superkafe.config.settings import get_settings
    from superkafe.web import app as app_module
    from superkafe.web.dependencies import reset_state

    # Keep structlog uncached so capture_logs works in later tests.
    monkeypatch.setattr(app_module, "setup_logging", lambda **_: None)
    get_settings.cache_clear()
    reset_state()
    yield app_module.create_app()
    reset_state()
    get_settings.cache_clear()
