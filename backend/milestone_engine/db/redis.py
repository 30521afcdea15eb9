"""Process-wide Redis client (release queue, change feed, notification channels)."""

import redis.asyncio as redis

from milestone_engine.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Connect and ping. No-op if already initialised."""
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    client = redis.from_url(
        url or settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        health_check_interval=30,
    )
    await client.ping()
    _redis = client


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
    _redis = None


def get_redis() -> redis.Redis:
    """Raises RuntimeError before init_redis()."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
