"""Pluggable request rate limiting.

Limits are tracked in Redis so every API instance shares one counter per key.
A fixed one-minute window is used: the first request in a window creates the
counter with an expiry, later requests increment it.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

from redis.asyncio import Redis, from_url

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...


class NoopRateLimiter:
    """Allows every request. Used when rate limiting is disabled."""

    async def allow(self, key: str) -> bool:
        return True


class RedisRateLimiter:
    def __init__(
        self,
        redis: Redis,
        max_requests: int,
        window_seconds: int = WINDOW_SECONDS,
        prefix: str = "ratelimit",
    ) -> None:
        self._redis = redis
        self._max_requests = max_requests
        self._window = window_seconds
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, max_requests: int) -> RedisRateLimiter:
        return cls(from_url(url, decode_responses=True), max_requests)

    async def allow(self, key: str) -> bool:
        window = int(time.time() // self._window)
        redis_key = f"{self._prefix}:{key}:{window}"
        count = await self._redis.incr(redis_key)
        if count == 1:
            await self._redis.expire(redis_key, self._window)
        if count > self._max_requests:
            logger.info("Rate limit exceeded for %s (%d/%d)", key, count, self._max_requests)
            return False
        return True
