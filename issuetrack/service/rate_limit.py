from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol

from fastapi import Request, Response

from issuetrack.logging import get_logger
from issuetrack.service.errors import RateLimitError
from issuetrack.storage.redis_cache import RedisCache

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_seconds: int


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float  # epoch seconds


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int = 0

    @property
    def reset_at_iso(self) -> str:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = self.reset_at_iso

    def to_error(self) -> RateLimitError:
        return RateLimitError(
            retry_after_seconds=self.retry_after_seconds,
            limit=self.limit,
            reset_at=datetime.fromtimestamp(self.reset_at, tz=timezone.utc),
        )


class RateLimitStore(Protocol):
    async def get(self, key: str, now: float) -> Optional[RateLimitEntry]: ...

    async def increment(self, key: str, window_seconds: int, now: float) -> RateLimitEntry: ...

    async def sweep(self, now: float) -> int: ...


class InMemoryRateLimitStore:
    """Per-process fixed windows; correct only for a single worker."""

    def __init__(self) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str, now: float) -> Optional[RateLimitEntry]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                return None
            return RateLimitEntry(entry.count, entry.reset_at)

    async def increment(self, key: str, window_seconds: int, now: float) -> RateLimitEntry:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = RateLimitEntry(count=0, reset_at=now + window_seconds)
                self._entries[key] = entry
            entry.count += 1
            return RateLimitEntry(entry.count, entry.reset_at)

    async def sweep(self, now: float) -> int:
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """Shared fixed windows in Redis; keys expire on their own."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def get(self, key: str, now: float) -> Optional[RateLimitEntry]:
        window = await self.cache.peek_window(key)
        if window is None:
            return None
        count, ttl_ms = window
        return RateLimitEntry(count=count, reset_at=now + ttl_ms / 1000)

    async def increment(self, key: str, window_seconds: int, now: float) -> RateLimitEntry:
        count, ttl_ms = await self.cache.incr_window(key, window_seconds * 1000)
        return RateLimitEntry(count=count, reset_at=now + ttl_ms / 1000)

    async def sweep(self, now: float) -> int:
        return 0


def client_identity(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, else ``unknown``."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return UNKNOWN_CLIENT


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        policies: Dict[str, RateLimitPolicy],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policies = policies
        self.clock = clock

    def policy(self, name: str) -> RateLimitPolicy:
        return self.policies[name]

    async def check(self, key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        now = self.clock()
        entry = await self.store.increment(f"{policy.name}:{key}", policy.window_seconds, now)
        remaining = policy.max_requests - entry.count
        if entry.count > policy.max_requests:
            retry_after = max(1, math.ceil(entry.reset_at - now))
            logger.warning(
                "rate_limit_exceeded",
                policy=policy.name,
                client=key,
                count=entry.count,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset_at=entry.reset_at,
                retry_after_seconds=retry_after,
            )
        return RateLimitDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=remaining,
            reset_at=entry.reset_at,
        )

    async def enforce(
        self, key: str, policy: RateLimitPolicy, *, response: Optional[Response] = None
    ) -> RateLimitDecision:
        """Check and raise :class:`RateLimitError` on denial."""
        decision = await self.check(key, policy)
        if response is not None:
            decision.apply_headers(response)
        if not decision.allowed:
            raise decision.to_error()
        return decision

    async def sweep(self) -> int:
        return await self.store.sweep(self.clock())


def build_policies(settings) -> Dict[str, RateLimitPolicy]:
    window = settings.rate_limit_window_seconds
    return {
        "auth": RateLimitPolicy("auth", settings.auth_rate_limit, window),
        "api": RateLimitPolicy("api", settings.api_rate_limit, window),
        "public": RateLimitPolicy("public", settings.public_rate_limit, window),
    }


async def run_rate_limit_sweep(limiter: RateLimiter, interval_seconds: float) -> None:
    """Drop expired windows every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await limiter.sweep()
            if removed:
                logger.debug("rate_limit_sweep", removed=removed)
        except Exception as exc:
            logger.error("rate_limit_sweep_failed", error=str(exc))
