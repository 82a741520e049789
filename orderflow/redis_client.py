"""
Shared async Redis connection plus the SET NX helpers used to de-duplicate provider notifications.
"""
import redis.asyncio as redis

from orderflow.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def claim_notification(key: str, ttl_seconds: int) -> bool:
    """
    True if this process is the first to see `key` within the TTL, False for a duplicate.
    SET NX EX: whoever sets the key owns the notification.
    """
    r = await get_redis()
    return bool(await r.set(key, "1", nx=True, ex=ttl_seconds))


async def release_notification(key: str) -> None:
    """Drop a claim whose handling failed, so the provider's redelivery is not dropped as a duplicate."""
    r = await get_redis()
    await r.delete(key)
