"""Housekeeping Service for the Door Access Edge Service.

Background task that periodically prunes old audit events and stale scan
dedup entries.
"""

import asyncio
import logging
from typing import Optional

from config import get_config
from database import cleanup_old_audit_events
from runtime import get_runtime

logger = logging.getLogger(__name__)

# Task reference for housekeeping
_housekeeping_task: Optional[asyncio.Task[None]] = None


async def _run_housekeeping_loop() -> None:
    """Run the housekeeping loop.

    Config is re-read on each iteration to support hot-reload.
    """
    logger.info("Housekeeping service started")

    while True:
        try:
            config = get_config()
            interval = config.storage.housekeeping_interval_seconds

            retention_seconds = config.storage.audit_retention_days * 86400
            deleted = await cleanup_old_audit_events(retention_seconds)
            if deleted > 0:
                logger.info(f"Housekeeping: removed {deleted} audit events")

            get_runtime().workflow.cleanup_old_entries(max_age_seconds=3600)

            await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info("Housekeeping service stopping")
            break
        except Exception as e:
            logger.error(f"Error in housekeeping: {e}", exc_info=True)
            await asyncio.sleep(10)


def start_housekeeping_service() -> asyncio.Task[None]:
    """Start the housekeeping background service.

    Returns:
        Asyncio task running the housekeeping loop.
    """
    global _housekeeping_task

    if _housekeeping_task is not None and not _housekeeping_task.done():
        logger.warning("Housekeeping service already running")
        return _housekeeping_task

    _housekeeping_task = asyncio.create_task(_run_housekeeping_loop())
    return _housekeeping_task


async def stop_housekeeping_service() -> None:
    """Stop the housekeeping background service."""
    global _housekeeping_task

    if _housekeeping_task is not None and not _housekeeping_task.done():
        _housekeeping_task.cancel()
        try:
            await _housekeeping_task
        except asyncio.CancelledError:
            pass
        logger.info("Housekeeping service stopped")

    _housekeeping_task = None


def is_housekeeping_running() -> bool:
    """Check whether the housekeeping task is alive."""
    return _housekeeping_task is not None and not _housekeeping_task.done()
