"""Shared Redis connection — used for rate limiting only.

Learn: Redis is optional. The pool is opened in the app lifespan; if
that fails the app still serves requests, and everything that wants
Redis (the rate limiter, the health check) treats get_redis() raising
as "not configured" and carries on.
"""

from typing import Optional

import redis.asyncio as aioredis

from reps.config import settings

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Open the pool and verify it answers."""
    global _redis
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    _redis = client
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
