"""Health check endpoint logic."""

from __future__ import annotations

import structlog

from superkafe.config.settings import get_settings

logger = structlog.get_logger(__name__)


async def check_health() -> dict[str, object]:
    """Return application health status with DB probe."""
    settings = get_settings()
    result: dict[str, object] = {
        "status": "healthy",
        "version": "0.1.0",
        "database": "connected" if settings.use_database else "disabled",
    }
    if not settings.use_database:
        return result

    try:
        from sqlalchemy import text

        from superkafe.storage.database import get_engine

        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_check_db_failed", error=str(exc))
        result["database"] = "unavailable"
        result["status"] = "degraded"

    return result
