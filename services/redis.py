"""
Shared Redis connection.

RedisBindingStore keeps the selected identity server and the pending
binding sessions here (keys under identity:*) so a restart can resume them.
"""

import redis.asyncio as redis
from core.config import settings

_redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get Redis client instance (lazy initialization)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
    return _redis_client


async def close_redis():
    """Close Redis connection"""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
