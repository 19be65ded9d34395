"""Tests for the fixed-window rate limiter and its stores."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from starlette.requests import Request
from starlette.responses import Response

from issuetrack.config import Settings
from issuetrack.service.errors import RateLimitError
from issuetrack.service.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitPolicy,
    RedisRateLimitStore,
    build_policies,
    client_identity,
    run_rate_limit_sweep,
)
from issuetrack.storage.redis_cache import RedisCache

AUTH = RateLimitPolicy("auth", max_requests=5, window_seconds=900)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _request(headers=None) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(InMemoryRateLimitStore(), {"auth": AUTH}, clock=clock)


class TestRateLimiter:
    async def test_sixth_request_in_window_is_denied(self, limiter):
        decisions = [await limiter.check("1.2.3.4", AUTH) for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[0].remaining == 4
        assert decisions[4].remaining == 0
        assert decisions[5].retry_after_seconds == 900

    async def test_retry_after_shrinks_with_time(self, limiter, clock):
        for _ in range(5):
            await limiter.check("k", AUTH)
        clock.advance(600)
        denied = await limiter.check("k", AUTH)
        assert denied.allowed is False
        assert denied.retry_after_seconds == 300

    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(6):
            await limiter.check("k", AUTH)
        clock.advance(901)
        decision = await limiter.check("k", AUTH)
        assert decision.allowed is True
        assert decision.remaining == 4

    async def test_keys_and_policies_are_independent(self, clock):
        api = RateLimitPolicy("api", max_requests=1, window_seconds=60)
        limiter = RateLimiter(InMemoryRateLimitStore(), {"auth": AUTH, "api": api}, clock=clock)

        assert (await limiter.check("a", api)).allowed is True
        assert (await limiter.check("a", api)).allowed is False
        assert (await limiter.check("b", api)).allowed is True
        assert (await limiter.check("a", AUTH)).allowed is True

    async def test_enforce_raises_with_retry_timing(self, limiter):
        response = Response()
        for _ in range(5):
            await limiter.enforce("k", AUTH, response=response)
        assert response.headers["X-RateLimit-Remaining"] == "0"

        with pytest.raises(RateLimitError) as exc_info:
            await limiter.enforce("k", AUTH)

        err = exc_info.value
        assert err.status_code == 429
        assert err.retry_after_seconds == 900
        assert err.details == {"retryAfter": 900}
        assert err.limit == 5

    async def test_sweep_drops_expired_windows(self, clock):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store, {"auth": AUTH}, clock=clock)
        await limiter.check("old", AUTH)
        clock.advance(600)
        await limiter.check("new", AUTH)
        clock.advance(301)

        removed = await limiter.sweep()

        assert removed == 1
        assert len(store) == 1

    async def test_concurrent_checks_count_every_hit(self, limiter):
        decisions = await asyncio.gather(*(limiter.check("burst", AUTH) for _ in range(20)))
        assert sum(1 for d in decisions if d.allowed) == 5


class TestDecisionHeaders:
    async def test_headers_use_iso_reset(self, limiter):
        decision = await limiter.check("k", AUTH)
        response = Response()
        decision.apply_headers(response)

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert response.headers["X-RateLimit-Reset"] == decision.reset_at_iso
        assert "T" in decision.reset_at_iso


class TestClientIdentity:
    def test_first_forwarded_hop(self):
        request = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert client_identity(request) == "203.0.113.9"

    def test_unknown_without_header(self):
        assert client_identity(_request()) == "unknown"

    def test_blank_header_is_unknown(self):
        assert client_identity(_request({"X-Forwarded-For": " , 10.0.0.1"})) == "unknown"


class TestRedisStore:
    async def test_increment_uses_window_in_ms(self):
        cache = MagicMock()
        cache.incr_window = AsyncMock(return_value=(3, 120_000))
        store = RedisRateLimitStore(cache)

        entry = await store.increment("auth:k", 900, now=1000.0)

        cache.incr_window.assert_awaited_once_with("auth:k", 900_000)
        assert entry.count == 3
        assert entry.reset_at == pytest.approx(1120.0)

    async def test_get_returns_none_for_missing_window(self):
        cache = MagicMock()
        cache.peek_window = AsyncMock(return_value=None)
        assert await RedisRateLimitStore(cache).get("k", now=0.0) is None

    async def test_sweep_is_noop(self):
        assert await RedisRateLimitStore(MagicMock()).sweep(0.0) == 0

    async def test_cache_hashes_keys_before_scripting(self):
        cache = RedisCache.__new__(RedisCache)
        cache._fixed_window = AsyncMock(return_value=[2, 5000])

        count, ttl = await cache.incr_window("auth:1.2.3.4", 900_000)

        assert (count, ttl) == (2, 5000)
        keys = cache._fixed_window.call_args.kwargs["keys"]
        assert keys[0].startswith("rate:")
        assert "1.2.3.4" not in keys[0]


class TestSweepTask:
    async def test_sweep_failures_are_logged_not_raised(self):
        limiter = MagicMock()
        limiter.sweep = AsyncMock(side_effect=RuntimeError("store down"))

        with patch("issuetrack.service.rate_limit.logger") as mock_logger:
            task = asyncio.create_task(run_rate_limit_sweep(limiter, 0))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert limiter.sweep.await_count >= 1
        mock_logger.error.assert_any_call("rate_limit_sweep_failed", error="store down")


def test_build_policies_from_settings():
    settings = Settings(
        jwt_secret="s" * 32,
        refresh_token_secret="r" * 32,
        auth_rate_limit=7,
        rate_limit_window_seconds=60,
    )
    policies = build_policies(settings)

    assert set(policies) == {"auth", "api", "public"}
    assert policies["auth"].max_requests == 7
    assert policies["api"].max_requests == 100
    assert policies["public"].max_requests == 200
    assert all(p.window_seconds == 60 for p in policies.values())
