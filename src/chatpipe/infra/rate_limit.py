"""Per-user sliding-window rate limiter.

One sorted set per user in Redis (trim, add, count, expire in a single
pipeline round-trip), or an in-process list of timestamps when Redis is
not available.  ``check`` returns the ``RateLimitInfo`` that ends up on
the chat context and in the ``X-RateLimit-*`` response headers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from redis.asyncio import Redis

from chatpipe.configs.config import AppConfig, get_app_config
from chatpipe.infra.lifespan import get_app
from chatpipe.infra.redis import build_redis

logger = logging.getLogger(__name__)

_RATELIMIT_KEY = "chatpipe:ratelimit:user:{user_id}"
_WINDOW_SECONDS = 60.0


class RateLimited(Exception):
    """Raised when a user exceeds their per-minute request allowance."""

    def __init__(self, message: str, *, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    remaining: int
    reset_at: float


class UserRateLimiter:
    """Sliding one-minute window keyed by user id."""

    def __init__(
        self,
        *,
        redis: Redis | None,
        limit_per_minute: int,
        window_seconds: float = _WINDOW_SECONDS,
    ) -> None:
        self._redis = redis
        self._limit = limit_per_minute
        self._window = window_seconds
        self._local_buckets: dict[str, list[float]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "local"

    async def check(self, user_id: str) -> RateLimitInfo:
        """Count this request against *user_id*.  Raises ``RateLimited``."""
        now = time.time()
        if self._redis is not None:
            count, oldest = await self._count_redis(user_id, now)
        else:
            count, oldest = self._count_local(user_id, now)

        reset_at = (oldest if oldest is not None else now) + self._window
        if self._limit > 0 and count > self._limit:
            retry_after = max(1, int(reset_at - now))
            raise RateLimited(
                f"Rate limit exceeded ({self._limit} requests per minute)",
                retry_after=retry_after,
            )
        return RateLimitInfo(
            limit=self._limit,
            remaining=max(0, self._limit - count),
            reset_at=reset_at,
        )

    async def _count_redis(
        self, user_id: str, now: float
    ) -> tuple[int, float | None]:
        key = _RATELIMIT_KEY.format(user_id=user_id)
        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(key, 0, now - self._window)
        pipe.zadd(key, {f"{now}": now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.expire(key, int(self._window) + 1)
        results = await pipe.execute()
        oldest = results[3][0][1] if results[3] else None
        return results[2], oldest

    def _count_local(self, user_id: str, now: float) -> tuple[int, float | None]:
        window_start = now - self._window
        timestamps = [
            t for t in self._local_buckets.get(user_id, []) if t > window_start
        ]
        timestamps.append(now)
        self._local_buckets[user_id] = timestamps
        return len(timestamps), timestamps[0]

    async def aclose(self) -> None:
        self._local_buckets.clear()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_rate_limiter(
    app: Annotated[FastAPI, Depends(get_app)],
    redis_client: Annotated[Redis | None, Depends(build_redis)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    """Create the ``UserRateLimiter`` and attach it to ``app.state``."""
    limiter = UserRateLimiter(
        redis=redis_client,
        limit_per_minute=config.api.rate_limit_per_minute,
    )
    app.state.rate_limiter = limiter
    logger.info(
        "UserRateLimiter: %s backend (%d/min per user)",
        limiter.backend,
        config.api.rate_limit_per_minute,
    )
    yield
    await limiter.aclose()


def get_rate_limiter(request: Request) -> UserRateLimiter:
    """Return the limiter stored on ``app.state`` by the lifespan."""
    return request.app.state.rate_limiter
