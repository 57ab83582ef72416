"""Redis client configuration and utilities."""

from redis.asyncio import Redis

from app.config import settings

# Global Redis client instance
_redis_client: Redis | None = None


def create_redis_client() -> Redis:
    """
    Create a new Redis client from settings.

    The worker process owns its own connection pool, separate from the API's.

    Returns:
        New Redis client instance
    """
    return Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        username=settings.redis_username,
        password=settings.redis_password,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=30,
    )


def get_redis_client() -> Redis:
    """
    Get or create Redis client instance.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = create_redis_client()

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Check if Redis connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        client = get_redis_client()
        await client.ping()
        return True
    except Exception:
        return False


async def close_redis_connection() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
