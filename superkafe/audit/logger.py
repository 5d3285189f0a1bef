"""Security audit trail.

``AuditLogger`` is insert-only and uses its own DB connection so audit
entries survive rollbacks of the calling transaction. Details are sanitized
(sensitive fields stripped, 10KB max) before they are stored.
``log_security_event`` is the structured-log side of the same sink.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

from superkafe.models.database import AuditLog
from superkafe.types import LogCategory

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

_SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "apikey",
        "authorization",
        "cookie",
        "session",
    }
)

_MAX_DETAILS_BYTES = 10_240  # 10KB


def _sanitize_details(details: dict[str, Any]) -> str:
    """Strip sensitive fields and enforce the size limit."""
    sanitized = {k: v for k, v in details.items() if k.lower() not in _SENSITIVE_FIELDS}
    encoded = json.dumps(sanitized, default=str)
    if len(encoded) > _MAX_DETAILS_BYTES:
        encoded = encoded[:_MAX_DETAILS_BYTES]
    return encoded


def log_security_event(event: str, **fields: Any) -> None:
    """Emit a HIGH-severity security log line."""
    logger.error(event, category=LogCategory.SECURITY, severity="HIGH", **fields)


class AuditLogger:
    """Insert-only audit logger with its own DB session."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def log(
        self,
        *,
        action: str,
        tenant_id: str | None = None,
        actor_id: str = "",
        details: dict[str, Any] | None = None,
        ip_address: str = "",
        correlation_id: str = "",
    ) -> None:
        """Write an audit log entry."""
        entry = AuditLog(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            details_json=_sanitize_details(details or {}),
            ip_address=ip_address,
            correlation_id=correlation_id,
        )
        try:
            async with AsyncSession(self._engine) as session:
                session.add(entry)
                await session.commit()
        except Exception:
            # Audit must never break the request
            logger.exception("audit_log_failed", action=action, tenant_id=tenant_id)
