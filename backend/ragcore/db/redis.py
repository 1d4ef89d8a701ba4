"""
Redis connection management.

Provides the async Redis connection used by the usage counter store.
Celery connects to its broker on its own.
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from ragcore.core.config import settings
from ragcore.core.logging import get_logger

logger = get_logger(__name__)

# Global connection pool
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis(url: Optional[str] = None) -> Redis:
    """
    Initialize Redis connection pool.

    Called during application startup.
    """
    global _redis_pool, _redis_client

    if _redis_pool is None:
        redis_url = url or settings.REDIS_URL
        logger.info("initializing_redis_pool", url=redis_url)

        _redis_pool = ConnectionPool.from_url(
            redis_url,
            decode_responses=True,  # Auto-decode bytes to strings
            max_connections=20,
            socket_connect_timeout=5,
            socket_keepalive=True,
        )
        _redis_client = Redis(connection_pool=_redis_pool)

        try:
            await _redis_client.ping()
            logger.info("redis_connection_successful")
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e), error_type=type(e).__name__)
            raise

    return _redis_client


async def get_redis() -> Redis:
    """Get the Redis client, initializing the pool on first use."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    """
    Close Redis connection pool.

    Called during application shutdown.
    """
    global _redis_pool, _redis_client

    if _redis_client is not None:
        logger.info("closing_redis_connection")
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
