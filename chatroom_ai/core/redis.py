"""
core/redis.py
-------------
Async Redis connection with pooling and health checks.

One client is shared by the job queue, the chatroom cache and the rate
limiter. It is owned by AppContext and closed on shutdown.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

from chatroom_ai.core.logging import get_logger

logger = get_logger(__name__)


async def connect_redis(url: str, max_connections: int = 50) -> "redis.Redis":
    """Create a pooled client and verify the server answers."""
    pool = ConnectionPool.from_url(
        url,
        max_connections=max_connections,
        decode_responses=True,
    )
    client = redis.Redis(connection_pool=pool)
    await client.ping()
    logger.info("Connected to Redis", url=_redact(url))
    return client


async def close_redis(client: "redis.Redis") -> None:
    await client.aclose()
    logger.info("Disconnected from Redis")


async def redis_healthy(client: "redis.Redis") -> bool:
    try:
        return bool(await client.ping())
    except RedisError as exc:
        logger.error("Redis health check failed", error=str(exc))
        return False


def _redact(url: str) -> str:
    # Never log credentials embedded in the URL
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
