"""
Order Pipeline — Redis connection

The only Redis user inside the API process is the idempotency cache; the
connection is created with the service container and closed with it.
"""
import redis.asyncio as aioredis

from orderflow.core.config import Settings


def create_redis(settings: Settings) -> aioredis.Redis:
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=settings.HEALTH_CHECK_TIMEOUT,
        health_check_interval=30,
    )
