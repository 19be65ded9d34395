from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the shared rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: first hit in a window creates the key and starts its TTL.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a throwaway loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash caller-supplied keys so header values cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def incr_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Count one hit in ``key``'s window; returns ``(count, ttl_ms)``."""
        result = await self._fixed_window(
            keys=[self._normalize_rate_key(key)], args=[window_ms]
        )
        count, ttl_ms = result
        return int(count), int(ttl_ms)

    async def peek_window(self, key: str) -> Optional[Tuple[int, int]]:
        redis_key = self._normalize_rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(redis_key)
        pipe.pttl(redis_key)
        raw_count, ttl_ms = await pipe.execute()
        if raw_count is None or ttl_ms is None or int(ttl_ms) < 0:
            return None
        return int(raw_count), int(ttl_ms)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
