"""Per-client upload throttling for process_file and import_from_url.

Each client gets a Redis counter "rate:{client_id}:upload" that expires
with its window (INCR, then EXPIRE on the first hit). A counter that lost
its TTL is re-armed instead of blocking the client forever.

Usage:
    from evidence_engine.security.rate_limiter import rate_limiter

    allowed, retry_after = await rate_limiter.check_upload("client-42")
"""

from __future__ import annotations

import logging

from redis.exceptions import RedisError

from evidence_engine.config import settings
from evidence_engine.db.engine import redis_client

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window upload limiter backed by Redis counters."""

    def __init__(self, redis: object, limit: int | None = None, window: int | None = None) -> None:
        self._redis = redis
        self._limit = limit or settings.security.upload_rate_limit
        self._window = window or settings.security.upload_rate_window

    @staticmethod
    def key_for(client_id: str) -> str:
        return f"rate:{client_id}:upload"

    async def check_upload(self, client_id: str) -> tuple[bool, int]:
        """Count one upload for the client.

        Returns:
            (allowed, retry_after): retry_after is the seconds left in the
            client's window when refused, 0 when allowed.
        """
        key = self.key_for(client_id)
        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, self._window)
            if count <= self._limit:
                return True, 0

            ttl = await self._redis.ttl(key)
            if ttl < 0:
                await self._redis.expire(key, self._window)
                ttl = self._window
        except (RedisError, OSError):
            # Fail open: ingestion must not depend on Redis being up
            logger.exception("Rate limiter unavailable for client %s", client_id)
            return True, 0

        logger.info("Client %s over upload limit (%d/%d), retry in %ds", client_id, count, self._limit, ttl)
        return False, max(ttl, 1)

    async def reset(self, client_id: str) -> None:
        await self._redis.delete(self.key_for(client_id))


# Module-level singleton
rate_limiter = RateLimiter(redis_client)
