"""
Per-pair delivery lock - serializes attempts for one (event, endpoint)
pair across processes.

SET NX PX with a random token, released by compare-and-delete so a holder
whose lock expired never deletes the next holder's lock. When Redis is
unreachable the attempt proceeds unlocked; the attempt-number unique
constraint still keeps two attempts from sharing a number.
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from eventdispatch.errors import LockTimeoutError

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def lock_key(event_id, endpoint_id) -> str:
    return f"eventdispatch:lock:delivery:{event_id}:{endpoint_id}"


@asynccontextmanager
async def delivery_lock(event_id, endpoint_id, ttl: float, wait: float):
    """
    Hold the pair lock for the body of the block.

    ttl bounds how long a crashed holder blocks the pair; wait must cover
    one in-flight attempt, otherwise a manual retry racing an automatic
    one gives up while the other attempt is still sending.
    Raises LockTimeoutError if the lock is still held after wait seconds.
    """
    key = lock_key(event_id, endpoint_id)
    token = uuid.uuid4().hex
    held = await _acquire(key, token, ttl, wait)
    try:
        yield
    finally:
        if held:
            await _release(key, token)


async def _acquire(key: str, token: str, ttl: float, wait: float) -> bool:
    """True once the lock is held, False when Redis is unavailable."""
    try:
        from eventdispatch.utils.cache import get_redis
        redis = await get_redis()

        deadline = time.monotonic() + wait
        while True:
            if await redis.set(key, token, nx=True, px=max(int(ttl * 1000), 1)):
                return True
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
    except Exception as e:
        logger.warning("Delivery lock unavailable for %s, proceeding unlocked: %s", key, str(e))
        return False

    logger.warning("Delivery lock wait of %ss expired for %s", wait, key)
    raise LockTimeoutError(f"Delivery lock {key} still held after {wait}s")


async def _release(key: str, token: str) -> None:
    try:
        from eventdispatch.utils.cache import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, token)
    except Exception as e:
        logger.warning("Delivery lock release failed for %s: %s", key, str(e))
