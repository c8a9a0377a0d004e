"""
Redis Client - async singleton used by the event dispatcher.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from freight.core.config import settings
from freight.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """redis://:secret@host -> redis://:****@host"""
    password = urlparse(url).password
    if password:
        return url.replace(f":{password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is None:
            client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
            await client.ping()
            _redis_client = client
            logger.info("Redis client initialized", extra_data={"url": _mask_redis_url(settings.REDIS_URL)})
    return _redis_client


async def close_redis() -> None:
    """Close the singleton, called on app shutdown and at the end of each Celery task"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
