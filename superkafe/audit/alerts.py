"""Rate-limited alerts for critical security events."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import structlog

from superkafe.types import LogCategory

logger = structlog.get_logger(__name__)


class SecurityAlerter:
    """Raises alerts at most once per alert type within ``cooldown_seconds``.

    Alerts are written as ``critical`` log lines; log shipping turns them
    into pages. Suppressed repeats are still counted.
    """

    def __init__(
        self,
        enabled: bool = True,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._enabled = enabled
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._last_sent: dict[str, float] = {}
        self._counts: dict[str, int] = {}

    def count(self, alert_type: str) -> int:
        return self._counts.get(alert_type, 0)

    def alert(self, alert_type: str, severity: str, message: str, **details: Any) -> bool:
        """Send an alert. Returns False when disabled or suppressed by cooldown."""
        if not self._enabled:
            return False

        self._counts[alert_type] = self._counts.get(alert_type, 0) + 1
        now = self._clock()
        last = self._last_sent.get(alert_type)
        if last is not None and now - last < self._cooldown:
            logger.debug(
                "security_alert_suppressed",
                category=LogCategory.SECURITY,
                alert_type=alert_type,
                cooldown_remaining=round(self._cooldown - (now - last), 1),
            )
            return False

        self._last_sent[alert_type] = now
        logger.critical(
            "security_alert",
            category=LogCategory.SECURITY,
            alert_type=alert_type,
            severity=severity,
            message=message,
            alert_count=self._counts[alert_type],
            **details,
        )
        return True

    def cross_tenant_access(self, **details: Any) -> bool:
        return self.alert(
            "CROSS_TENANT_ACCESS",
            "high",
            "Cross-tenant access attempt detected",
            **details,
        )
