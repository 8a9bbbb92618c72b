"""Redis client construction for the tenant lookup cache.

The client is created once by the application lifespan and handed to the
components that use it. Lookups that fail against Redis fall through to the
database, so Redis is never on the correctness path.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.tenantsync.config import Settings


def create_redis(settings: Settings) -> aioredis.Redis:
    """Create a Redis client with bounded socket timeouts."""
    return aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
    )


async def close_redis(client: aioredis.Redis | None) -> None:
    """Close the Redis connection pool."""
    if client is not None:
        await client.aclose()
