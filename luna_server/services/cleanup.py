# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Periodic housekeeping: delete old one-time codes, drop idle rate limit buckets."""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from luna_server.config import settings
from luna_server.models.timestamp import utcnow
from luna_server.rate_limit import TokenBucketLimiter
from luna_server.services.codes import sweep_expired_codes

logger = logging.getLogger(__name__)


async def run_code_sweep(session_maker: async_sessionmaker[AsyncSession]) -> int:
    """Delete one-time codes older than the retention window. Logs failures, returns 0 on error."""
    cutoff = utcnow() - timedelta(hours=settings.code_retention_hours)
    logger.info("Starting cleanup of one-time codes created before %s", cutoff.isoformat())
    try:
        async with session_maker() as db:
            deleted = await sweep_expired_codes(db, cutoff)
            await db.commit()
    except Exception:
        logger.exception("Error cleaning up one-time codes")
        return 0
    if deleted:
        logger.info("Code cleanup completed. Deleted %d code(s)", deleted)
    else:
        logger.debug("Code cleanup completed. No codes to delete")
    return deleted


async def code_cleanup_loop(
    session_maker: async_sessionmaker[AsyncSession],
    limiter: TokenBucketLimiter | None = None,
) -> None:
    """Run the sweep every code_cleanup_interval_hours until cancelled."""
    interval_h = settings.code_cleanup_interval_hours
    if interval_h <= 0:
        logger.info("One-time code cleanup disabled")
        return
    while True:
        await asyncio.sleep(interval_h * 3600)
        await run_code_sweep(session_maker)
        if limiter is not None:
            pruned = limiter.prune()
            logger.debug("Pruned %d idle rate limit bucket(s)", pruned)
