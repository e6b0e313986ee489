"""Tests for the per-client upload rate limiter."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from evidence_engine.config import settings
from evidence_engine.security.rate_limiter import RateLimiter


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.ttl = AsyncMock(return_value=42)
    return redis


def _limiter(redis: AsyncMock) -> RateLimiter:
    return RateLimiter(redis, limit=3, window=60)


class TestRateLimiter:
    @pytest.mark.asyncio()
    async def test_first_upload_starts_window(self, mock_redis):
        mock_redis.incr = AsyncMock(return_value=1)

        assert await _limiter(mock_redis).check_upload("c") == (True, 0)

        mock_redis.incr.assert_awaited_once_with("rate:c:upload")
        mock_redis.expire.assert_awaited_once_with("rate:c:upload", 60)

    @pytest.mark.asyncio()
    async def test_last_allowed_upload(self, mock_redis):
        mock_redis.incr = AsyncMock(return_value=3)

        assert await _limiter(mock_redis).check_upload("c") == (True, 0)
        mock_redis.expire.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_over_limit_reports_ttl(self, mock_redis):
        mock_redis.incr = AsyncMock(return_value=4)

        assert await _limiter(mock_redis).check_upload("c") == (False, 42)

    @pytest.mark.asyncio()
    async def test_lost_ttl_is_rearmed(self, mock_redis):
        mock_redis.incr = AsyncMock(return_value=4)
        mock_redis.ttl = AsyncMock(return_value=-1)

        allowed, retry_after = await _limiter(mock_redis).check_upload("c")

        assert (allowed, retry_after) == (False, 60)
        mock_redis.expire.assert_awaited_once_with("rate:c:upload", 60)

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("error", [RedisConnectionError("redis down"), ConnectionRefusedError()])
    async def test_fails_open(self, mock_redis, error):
        mock_redis.incr = AsyncMock(side_effect=error)

        assert await _limiter(mock_redis).check_upload("c") == (True, 0)

    @pytest.mark.asyncio()
    async def test_reset(self, mock_redis):
        await _limiter(mock_redis).reset("c")
        mock_redis.delete.assert_awaited_once_with("rate:c:upload")

    def test_defaults_from_settings(self, mock_redis):
        limiter = RateLimiter(mock_redis)
        assert limiter._limit == settings.security.upload_rate_limit
        assert limiter._window == settings.security.upload_rate_window
