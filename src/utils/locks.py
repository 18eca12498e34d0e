"""
Redis distributed locks - single writer per order across dispatcher, reaper and operators.
Uses Redis SET NX with TTL for automatic expiration.

The lock is held around a transaction that also re-reads the order row
FOR UPDATE, so the row lock still serializes writers if Redis is unreachable.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 30
LOCK_WAIT_SECONDS = 5
LOCK_POLL_INTERVAL = 0.05  # 50ms

# Lua script for atomic compare-and-delete
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout."""
    pass


def order_lock_key(order_id) -> str:
    return f"tourpay:lock:order:{order_id}"


@asynccontextmanager
async def order_lock(
    order_id,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
):
    """
    Acquire a distributed lock for an order.
    Blocks up to `wait` seconds, then raises LockTimeoutError.

    Usage:
        async with order_lock(order.id):
            # read current state, decide, write, commit
    """
    lock_key = order_lock_key(order_id)
    lock_value = uuid.uuid4().hex  # Unique value to ensure we only release our own lock

    acquired = False
    try:
        acquired = await _acquire_lock(lock_key, lock_value, ttl, wait)
        if not acquired:
            raise LockTimeoutError(f"Could not acquire lock for order {str(order_id)[:8]} within {wait}s")
        yield
    finally:
        if acquired:
            await _release_lock(lock_key, lock_value)


async def _acquire_lock(
    key: str,
    value: str,
    ttl: int,
    wait: float,
) -> bool:
    """Try to acquire a Redis lock with polling."""
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()

        was_set = await redis.set(key, value, nx=True, ex=ttl)
        if was_set:
            return True

        elapsed = 0.0
        while elapsed < wait:
            await asyncio.sleep(LOCK_POLL_INTERVAL)
            elapsed += LOCK_POLL_INTERVAL
            was_set = await redis.set(key, value, nx=True, ex=ttl)
            if was_set:
                return True

        logger.warning("Lock acquisition timed out for %s", key)
        return False
    except Exception as e:
        logger.warning("Redis lock error for %s: %s. Relying on row lock.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))
