"""
Redis connection used only for coordination between API processes.

The reward settler takes its lock here; no booking or ledger state lives in
Redis, so the booking API keeps working while Redis is down and only the
retry cycle is skipped.
"""

import logging

import redis.asyncio as aioredis

from freightbook.config import settings

logger = logging.getLogger(__name__)

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url,
    decode_responses=True,
    socket_timeout=settings.redis_socket_timeout_seconds,
)


async def get_redis() -> aioredis.Redis:
    """Client on the shared pool; cheap to create per settle cycle."""
    return aioredis.Redis(connection_pool=_pool)


async def close_redis() -> None:
    await _pool.disconnect()
    logger.info("Redis pool closed")
