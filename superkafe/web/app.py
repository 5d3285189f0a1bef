"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from superkafe.config.logging import setup_logging
from superkafe.config.settings import get_settings
from superkafe.exceptions import (
    ScopedDataAccessError,
    TenantContextMissingError,
    TenantMismatchError,
)
from superkafe.tenancy.context import verify_context_propagation
from superkafe.web.dependencies import get_resolver
from superkafe.web.middleware import RequestIDMiddleware, TenantResolverMiddleware
from superkafe.web.routes.tenants import router as tenants_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Refuse to serve if tenant context cannot be kept per-request.
    await verify_context_propagation()
    settings = get_settings()
    if settings.use_database and settings.create_tables:
        from superkafe.storage.database import init_db

        await init_db()
    logger.info("app_started")
    yield


def _internal_error(code: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "code": code, "message": "Internal server error"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)

    app = FastAPI(
        title="SuperKafe",
        description="Multi-tenant cafe backend",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(TenantContextMissingError)
    async def missing_context_handler(
        request: Request, exc: TenantContextMissingError
    ) -> JSONResponse:
        logger.error("unscoped_request_blocked", path=request.url.path, error=str(exc))
        return _internal_error("TENANT_CONTEXT_MISSING")

    @app.exception_handler(TenantMismatchError)
    async def mismatch_handler(request: Request, exc: TenantMismatchError) -> JSONResponse:
        logger.error(
            "tenant_mismatch_defect",
            path=request.url.path,
            expected=exc.expected,
            actual=exc.actual,
            error=str(exc),
        )
        return _internal_error("TENANT_MISMATCH")

    @app.exception_handler(ScopedDataAccessError)
    async def data_access_handler(request: Request, exc: ScopedDataAccessError) -> JSONResponse:
        logger.error("data_access_failed", path=request.url.path, error=str(exc))
        return _internal_error("DATA_ACCESS_ERROR")

    # Middleware (last added runs first)
    app.add_middleware(
        TenantResolverMiddleware,
        resolver=get_resolver,
        header=settings.tenant_header,
        fallback_header=settings.tenant_header_fallback,
        exempt_paths=settings.tenant_exempt_paths,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Request-ID",
            settings.tenant_header,
            settings.tenant_header_fallback,
        ],
    )
    app.add_middleware(RequestIDMiddleware)

    # Health check (public, no tenant)
    @app.get("/api/health")
    async def health_check() -> dict[str, object]:
        from superkafe.web.health import check_health

        return await check_health()

    app.include_router(tenants_router)

    logger.info("app_created")
    return app
