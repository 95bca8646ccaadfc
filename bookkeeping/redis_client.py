"""Shared Redis connection."""
from typing import Optional

import redis.asyncio as redis

from bookkeeping.config import settings


_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return the process-wide Redis client, creating it lazily."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def prefixed(key: str) -> str:
    return f"{settings.REDIS_KEY_PREFIX}{key}"


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
