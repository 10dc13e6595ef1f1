"""
Delivery sweeper - fails attempts left PENDING by a crashed process.
Runs every sweeper_interval_seconds. An abandoned attempt would otherwise
block manual retry and be skipped by the health check forever.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from eventdispatch.config import Settings, get_settings

logger = logging.getLogger(__name__)

ABANDONED_REASON = "Attempt abandoned"
HEARTBEAT_KEY = "eventdispatch:worker_health:delivery_sweeper"


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from eventdispatch.utils.cache import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=300)
    except Exception as e:
        logger.debug("Sweeper heartbeat not written: %s", str(e))


async def sweep_stale_deliveries(store, settings: Optional[Settings] = None) -> int:
    """Mark attempts pending longer than stale_attempt_minutes as FAILED. Returns count."""
    settings = settings or get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.stale_attempt_minutes)
    return await store.fail_stale_deliveries(cutoff, ABANDONED_REASON)


async def run_delivery_sweeper(store=None, settings: Optional[Settings] = None):
    """Main sweeper loop. Runs continuously."""
    settings = settings or get_settings()
    if store is None:
        from eventdispatch.database import get_session_factory
        from eventdispatch.services.event_store import SqlEventStore
        store = SqlEventStore(get_session_factory())

    logger.info("Delivery sweeper started")

    while True:
        try:
            swept = await sweep_stale_deliveries(store, settings)
            if swept > 0:
                logger.warning("Delivery sweeper failed %d abandoned attempts", swept)
        except Exception as e:
            logger.error("Delivery sweeper error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(settings.sweeper_interval_seconds)
