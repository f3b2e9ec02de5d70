"""Rate limiter tests — fixed-window counting and the HTTP 429 path."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from ragline.api.deps import get_rate_limiter
from ragline.core.rate_limit import NoopRateLimiter, RedisRateLimiter
from ragline.main import app


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the limiter."""

    def __init__(self):
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True


class RecordingLimiter:
    def __init__(self, allowed: bool):
        self.allowed = allowed
        self.keys: list[str] = []

    async def allow(self, key: str) -> bool:
        self.keys.append(key)
        return self.allowed


@pytest.mark.asyncio
async def test_redis_limiter_allows_up_to_limit():
    redis = FakeRedis()
    limiter = RedisRateLimiter(redis, max_requests=3)

    results = [await limiter.allow("1.2.3.4") for _ in range(5)]

    assert results == [True, True, True, False, False]
    (key,) = redis.counts
    assert key.startswith("ratelimit:1.2.3.4:")
    assert redis.expiries == {key: 60}


@pytest.mark.asyncio
async def test_redis_limiter_counts_keys_separately():
    limiter = RedisRateLimiter(FakeRedis(), max_requests=1)
    assert await limiter.allow("a") is True
    assert await limiter.allow("b") is True
    assert await limiter.allow("a") is False


@pytest.mark.asyncio
async def test_noop_limiter_always_allows():
    limiter = NoopRateLimiter()
    assert all([await limiter.allow("x") for _ in range(100)])


@pytest.mark.asyncio
async def test_rejected_request_returns_429(client: AsyncClient):
    limiter = RecordingLimiter(allowed=False)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    resp = await client.post(
        "/v1/query",
        json={"prompt": "hello"},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
    )

    assert resp.status_code == 429
    assert resp.json()["code"] == "RATE_LIMITED"
    assert limiter.keys == ["203.0.113.7"]


@pytest.mark.asyncio
async def test_health_is_not_rate_limited(client: AsyncClient):
    limiter = RecordingLimiter(allowed=False)
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    resp = await client.get("/health")
    assert resp.status_code == 200
    assert limiter.keys == []


@pytest.mark.asyncio
async def test_limiter_outage_lets_request_through(client: AsyncClient):
    broken = AsyncMock()
    broken.allow.side_effect = RedisConnectionError("redis down")
    app.dependency_overrides[get_rate_limiter] = lambda: broken

    resp = await client.get("/v1/documents/doc_unknown")
    assert resp.status_code == 404
    broken.allow.assert_awaited_once()
