"""Async Redis client lifespan dependency.

``build_redis`` yields a verified client, or ``None`` when no URI is
configured or the server cannot be reached.  The rate limiter declares
``Depends(build_redis)`` and falls back to in-process state on ``None``.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatpipe.configs.config import AppConfig, get_app_config

logger = logging.getLogger(__name__)


async def build_redis(
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[Redis | None, None]:
    """Create a Redis client; yield ``None`` if unset or unreachable."""
    uri = config.third_party.redis_uri
    if not uri:
        logger.info("No Redis URI configured, using in-process rate limiting.")
        yield None
        return

    client = Redis.from_url(uri, decode_responses=True)
    verified: Redis | None = None
    try:
        await client.ping()
        verified = client
    except (RedisError, OSError):
        logger.warning("Redis unavailable, falling back to in-process rate limiting.")
        await client.aclose()

    yield verified

    if verified is not None:
        await client.aclose()
