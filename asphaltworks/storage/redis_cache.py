from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding fixed-window rate-limit counters."""

    # Atomic fixed-window hit: increment, start the window on first hit,
    # and report the remaining TTL in milliseconds.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
local ttl = redis.call('PTTL', key)
if count == 1 or ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    # Undo one hit without resurrecting an expired window.
    _REFUND_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 1 then
  local count = redis.call('DECR', key)
  if count < 0 then
    redis.call('SET', key, 0, 'KEEPTTL')
    count = 0
  end
  return count
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._refund = self.client.register_script(self._REFUND_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _rate_key(key: str) -> str:
        """Hash rate-limit subjects so IPs and user ids cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """Count one request; return ``(count, reset_at_epoch_seconds)``."""
        count, ttl_ms = await self._fixed_window(
            keys=[self._rate_key(key)], args=[int(window_seconds * 1000)]
        )
        return int(count), time.time() + max(0, int(ttl_ms)) / 1000.0

    async def refund_window(self, key: str) -> int:
        return int(await self._refund(keys=[self._rate_key(key)]))

    async def peek_window(self, key: str) -> Optional[Tuple[int, float]]:
        safe_key = self._rate_key(key)
        pipe = self.client.pipeline()
        pipe.get(safe_key)
        pipe.pttl(safe_key)
        raw, ttl_ms = await pipe.execute()
        if raw is None or ttl_ms is None or int(ttl_ms) < 0:
            return None
        return int(raw), time.time() + int(ttl_ms) / 1000.0

    async def reset_window(self, key: str) -> None:
        await self.client.delete(self._rate_key(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
