#!/usr/bin/env python3
"""Inspect a user's resolved timezone, date boundaries and filter counts.

Usage:
    uv run python scripts/inspect_boundaries.py <user_id> [--tenant <tenant_id>] [--window <days>]
"""

import asyncio
import logging
import sys

from taskscope.core.cache_client import InMemoryCache
from taskscope.main import TaskScope


logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


async def inspect(user_id: str, tenant_id: str | None, window_days: int) -> None:
    """Print what the engine computes for one user.

    Args:
        user_id: User to inspect
        tenant_id: If given, also print the per-bucket counts
        window_days: Completed-task window for the cutoff boundary
    """
    async with TaskScope() as scope:
        timezone = await scope.get_user_timezone(user_id)
        logger.info(f"timezone: {timezone}")

        boundaries = await scope.get_date_boundaries(user_id, window_days)
        for name, value in boundaries.model_dump().items():
            logger.info(f"  {name}: {value.isoformat()}")

        if tenant_id:
            counts = await scope.get_filter_counts(tenant_id, user_id)
            logger.info("counts:")
            for name, value in counts.model_dump().items():
                logger.info(f"  {name}: {value}")

        logger.info(f"store: {scope.store_client.get_connection_stats().model_dump()}")
        if isinstance(scope.cache, InMemoryCache):
            logger.info(f"cache: {scope.cache.get_health_status()}")


def print_usage() -> None:
    """Print usage information."""
    logger.info(__doc__)


def main() -> None:
    args = sys.argv[1:]
    if not args or args[0].startswith("--"):
        print_usage()
        sys.exit(1)

    user_id = args[0]
    tenant_id = None
    window_days = 7

    rest = args[1:]
    while rest:
        flag = rest.pop(0)
        if flag == "--tenant" and rest:
            tenant_id = rest.pop(0)
        elif flag == "--window" and rest and rest[0].isdigit():
            window_days = int(rest.pop(0))
        else:
            print_usage()
            sys.exit(1)

    asyncio.run(inspect(user_id, tenant_id, window_days))


if __name__ == "__main__":
    main()
