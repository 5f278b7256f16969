"""
Redis client construction.

Clients are created explicitly and handed to the components that need them;
there is no module-level connection pool.
"""

from redis.asyncio import Redis
from redis.exceptions import RedisError

from cookmode.config.logging import get_logger
from cookmode.config.settings import Settings

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> Redis:
    """
    Create an asyncio Redis client for settings.redis_url.

    Responses are decoded to str. No connection is made until first use.
    """
    logger.info("Creating Redis client", redis_url=settings.redis_url)
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_keepalive=True,
        health_check_interval=30,
    )


async def health_check(client: Redis) -> bool:
    """PING the server. Returns False instead of raising."""
    try:
        response = await client.ping()
    except RedisError as e:
        logger.warning("Redis health check failed", error=str(e))
        return False

    if not response:
        logger.warning("Redis health check: PING returned False")
        return False
    return True
