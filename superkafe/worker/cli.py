"""CLI entry point for the tenant lifecycle sweep."""

from __future__ import annotations

import asyncio

import structlog

from superkafe.config.logging import setup_logging
from superkafe.config.settings import get_settings
from superkafe.storage.database import get_engine
from superkafe.storage.repositories.tenants import DatabaseTenantDirectory
from superkafe.tenancy.jobs import expire_lapsed_trials

logger = structlog.get_logger(__name__)


async def _sweep() -> list[str]:
    directory = DatabaseTenantDirectory(get_engine())
    return await expire_lapsed_trials(directory)


def main() -> None:
    """Expire lapsed trials once and exit."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_output=True)
    expired = asyncio.run(_sweep())
    logger.info("sweep_finished", expired=len(expired))


if __name__ == "__main__":
    main()
