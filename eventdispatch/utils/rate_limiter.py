"""
Redis-based rate limiter for outbound webhook traffic.
Uses sliding window counter pattern (sorted set of request timestamps).
"""
import logging
import time
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


async def check_rate_limit(
    key: str,
    limit: int,
    window: int = WINDOW_SECONDS,
) -> tuple[bool, Optional[int]]:
    """
    Check and consume one slot of key's budget using a Redis sliding window.

    Returns: (allowed: bool, retry_after_seconds: int | None)
    """
    try:
        from eventdispatch.utils.cache import get_redis
        redis = await get_redis()

        redis_key = f"eventdispatch:ratelimit:{key}"
        now = time.time()
        window_start = now - window

        pipe = redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        # Unique member so two calls in the same instant both count
        pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, window + 1)

        results = await pipe.execute()
        request_count = results[2]

        if request_count > limit:
            logger.warning(
                "Rate limit exceeded: key=%s count=%d limit=%d",
                key, request_count, limit,
            )
            return False, max(int(window), 1)

        return True, None
    except Exception as e:
        # Redis failure should not block deliveries - allow through
        logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
        return True, None


class RateLimiter:
    """Injectable rate-limit capability consumed by the delivery dispatcher."""

    async def check_and_consume(self, key: str, limit: int, window: int) -> bool:
        allowed, _ = await check_rate_limit(key, limit, window)
        return allowed
