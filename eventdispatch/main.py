"""
Process entry point for the dispatch core.
Host applications enter lifespan() once at startup and use the yielded
DispatchCore for every emit/notify call.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from eventdispatch.config import get_settings
from eventdispatch.utils.logging import configure_structured_logging

logger = logging.getLogger("eventdispatch")


def init_sentry(settings) -> bool:
    """Initialize Sentry if a DSN is configured."""
    if not settings.sentry_dsn:
        return False
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment=settings.app_env,
        )
        logger.info("Sentry initialized")
        return True
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))
        return False


@asynccontextmanager
async def lifespan(run_workers: bool = True):
    """Startup and shutdown for the dispatch core and its background workers."""
    from eventdispatch.database import dispose_engine
    from eventdispatch.services.dispatch import DispatchCore
    from eventdispatch.utils.cache import close_redis

    settings = get_settings()
    configure_structured_logging(settings.log_level)
    logger.info("Event dispatch starting up (env=%s)", settings.app_env)
    init_sentry(settings)

    core = DispatchCore.from_settings(settings)

    worker_tasks: list[asyncio.Task] = []
    if run_workers:
        from eventdispatch.workers.delivery_sweeper import run_delivery_sweeper
        worker_tasks.append(asyncio.create_task(run_delivery_sweeper(settings=settings)))
        logger.info("Delivery sweeper started")

    try:
        yield core
    finally:
        logger.info("Event dispatch shutting down")
        for task in worker_tasks:
            task.cancel()
        if worker_tasks:
            await asyncio.gather(*worker_tasks, return_exceptions=True)
        await core.drain()
        await core.aclose()
        await close_redis()
        await dispose_engine()
