"""Tests for the per-user sliding-window rate limiter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatpipe.infra.rate_limit import RateLimited, UserRateLimiter

# =========================================================================
# Local backend
# =========================================================================


class TestLocalBackend:
    def setup_method(self):
        self.limiter = UserRateLimiter(redis=None, limit_per_minute=3)

    def test_backend_name(self):
        assert self.limiter.backend == "local"

    async def test_remaining_counts_down(self):
        first = await self.limiter.check("u1")
        second = await self.limiter.check("u1")
        assert first.limit == 3
        assert (first.remaining, second.remaining) == (2, 1)

    async def test_over_limit_raises_with_retry_after(self):
        for _ in range(3):
            await self.limiter.check("u1")
        with pytest.raises(RateLimited) as exc_info:
            await self.limiter.check("u1")
        assert 1 <= exc_info.value.retry_after <= 60

    async def test_users_are_independent(self):
        for _ in range(3):
            await self.limiter.check("u1")
        info = await self.limiter.check("u2")
        assert info.remaining == 2

    async def test_window_slides(self):
        with patch("chatpipe.infra.rate_limit.time.time", return_value=1000.0):
            for _ in range(3):
                await self.limiter.check("u1")
        with patch("chatpipe.infra.rate_limit.time.time", return_value=1061.0):
            info = await self.limiter.check("u1")
        assert info.remaining == 2
        assert info.reset_at == pytest.approx(1121.0)

    async def test_zero_limit_disables(self):
        limiter = UserRateLimiter(redis=None, limit_per_minute=0)
        for _ in range(10):
            await limiter.check("u1")


# =========================================================================
# Redis backend
# =========================================================================


def _redis_with(count: int, oldest: float | None) -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(
        return_value=[0, 1, count, [(b"x", oldest)] if oldest is not None else [], True]
    )
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    return redis


class TestRedisBackend:
    async def test_under_limit(self):
        redis = _redis_with(count=2, oldest=1000.0)
        limiter = UserRateLimiter(redis=redis, limit_per_minute=5)
        with patch("chatpipe.infra.rate_limit.time.time", return_value=1010.0):
            info = await limiter.check("u1")
        assert limiter.backend == "redis"
        assert info.remaining == 3
        assert info.reset_at == pytest.approx(1060.0)
        pipe = redis.pipeline.return_value
        pipe.zadd.assert_called_once()
        assert pipe.zadd.call_args.args[0] == "chatpipe:ratelimit:user:u1"

    async def test_over_limit(self):
        limiter = UserRateLimiter(
            redis=_redis_with(count=6, oldest=1000.0), limit_per_minute=5
        )
        with patch("chatpipe.infra.rate_limit.time.time", return_value=1030.0):
            with pytest.raises(RateLimited) as exc_info:
                await limiter.check("u1")
        assert exc_info.value.retry_after == 30
