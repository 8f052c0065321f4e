"""
Redis client manager for thread persistence.

Provides:
- Async Redis client with connection pooling
- Singleton pattern for resource efficiency
- Graceful degradation: ``None`` when Redis is not configured or unreachable
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_connection_failed = False  # Circuit breaker for repeated failures


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url.split("//")[-1]


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create the async Redis client.

    Returns:
        Redis client instance, or None when persistence is unavailable
    """
    global _redis_client, _connection_failed

    # If previous connection attempt failed, don't retry immediately
    if _connection_failed:
        return None

    if _redis_client is not None:
        return _redis_client

    redis_url = get_settings().redis_url
    if not redis_url:
        logger.warning(
            "Redis URL not configured, threads will only live in memory",
            hint="Set COPILOT_REDIS_URL to persist threads",
        )
        _connection_failed = True
        return None

    try:
        client = redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        await client.ping()
    except redis.RedisError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(redis_url),
            hint="Check COPILOT_REDIS_URL and ensure Redis server is running",
        )
        _connection_failed = True
        return None

    _redis_client = client
    logger.info("Redis client initialized successfully", url=_redact(redis_url), max_connections=20)
    return _redis_client


def set_redis_client(client: Optional[redis.Redis]) -> None:
    """Install a client directly (used with fakeredis in tests)."""
    global _redis_client, _connection_failed
    _redis_client = client
    _connection_failed = False


async def close_redis_client() -> None:
    """Close Redis client connection."""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except redis.RedisError as e:
            logger.warning("Error closing Redis client", error=str(e))
        finally:
            _redis_client = None


async def reset_redis_client() -> None:
    """Reset Redis client (for testing or after connection failures)."""
    global _connection_failed

    await close_redis_client()
    _connection_failed = False
    logger.info("Redis client reset")


async def health_check() -> bool:
    """
    Check Redis health.

    Returns:
        True if Redis is healthy, False otherwise
    """
    client = await get_redis_client()
    if client is None:
        return False
    try:
        return await client.ping() is True
    except redis.RedisError as e:
        logger.error("Redis health check failed", error=str(e))
        return False
