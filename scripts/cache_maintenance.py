#!/usr/bin/env python3
"""
Result Cache Maintenance

Reclaims storage held by expired cache entries, or drops every cached
result for one user (e.g. on account deletion).

Usage:
    # Sweep expired entries in batches until none remain (cron)
    python3 -m scripts.cache_maintenance

    # Cap the number of batches per run
    python3 -m scripts.cache_maintenance --max-batches 10

    # Remove all cached results for a user
    python3 -m scripts.cache_maintenance --invalidate-user user-123
"""

import argparse
import asyncio
import sys

from gateway.db.session import close_engines, get_write_session_factory
from gateway.observability.logging import get_logger, setup_logging
from gateway.services.result_cache import ResultCache
from gateway.services.storage import ObjectStorage

logger = get_logger(__name__)


async def sweep(cache: ResultCache, batch_size: int, max_batches: int) -> int:
    """Sweep expired entries batch by batch. Returns the number removed."""
    total = 0
    for batch in range(1, max_batches + 1):
        removed = await cache.sweep_expired(batch_size=batch_size)
        total += removed
        if removed < batch_size:
            break
    else:
        logger.warning("cache_sweep_batch_limit_reached", batches=max_batches, removed=total)
    return total


async def run(args: argparse.Namespace) -> int:
    storage = ObjectStorage()
    async with get_write_session_factory()() as session:
        cache = ResultCache(session, storage)
        if args.invalidate_user:
            removed = await cache.invalidate_user(args.invalidate_user)
            logger.info("cache_maintenance_invalidated", user_id=args.invalidate_user, removed=removed)
        else:
            removed = await sweep(cache, args.batch_size, args.max_batches)
            logger.info("cache_maintenance_swept", removed=removed)
    await close_engines()
    return removed


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Result cache maintenance")
    parser.add_argument("--batch-size", type=int, default=500, help="Rows deleted per batch")
    parser.add_argument("--max-batches", type=int, default=100, help="Batches per run")
    parser.add_argument("--invalidate-user", metavar="USER_ID", help="Drop one user's cache")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)
    try:
        asyncio.run(run(args))
    except Exception as e:
        logger.error("cache_maintenance_failed", error=str(e), exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
