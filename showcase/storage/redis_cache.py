from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from showcase.storage.models import CsrfToken, RateWindow


class RedisCache:
    """Shared Redis store for CSRF tokens and rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window counter: atomic reset-or-increment with a PEXPIRE at window end
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local delta = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or now - start >= window then
  if delta <= 0 then
    return {0, now}
  end
  count = 0
  start = now
end

count = math.max(0, count + delta)
redis.call('HMSET', key, 'count', count, 'start', start)
redis.call('PEXPIRE', key, math.max(window - (now - start), 1))
return {count, start}
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

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Clamp a TTL to at least one second so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - now).total_seconds()))

    @staticmethod
    def _window_key(key: str) -> str:
        # Hash so client-controlled components cannot collide through delimiters
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _epoch_ms(when: datetime) -> int:
        return int(when.timestamp() * 1000)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # csrf
    async def set_csrf_token(self, token: CsrfToken) -> None:
        payload = json.dumps(
            {
                "token": token.token,
                "subject_id": token.subject_id,
                "expires_at": token.expires_at.isoformat(),
            }
        )
        await self.client.set(
            f"csrf:{token.key}", payload, ex=self._ttl_seconds(token.expires_at)
        )

    async def get_csrf_token(self, key: str) -> Optional[CsrfToken]:
        raw = await self.client.get(f"csrf:{key}")
        if not raw:
            return None
        data = json.loads(raw)
        return CsrfToken(
            token=data["token"],
            subject_id=int(data["subject_id"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )

    async def sweep_csrf_tokens(self, now: datetime) -> int:
        # Key TTLs expire entries server-side
        return 0

    # rate windows
    async def increment_window(
        self, key: str, window_seconds: int, now: datetime, delta: int = 1
    ) -> RateWindow:
        count, start = await self._fixed_window(
            keys=[self._window_key(key)],
            args=[self._epoch_ms(now), window_seconds * 1000, delta],
        )
        return RateWindow(
            key=key,
            count=int(count),
            window_start=datetime.fromtimestamp(int(start) / 1000, tz=timezone.utc),
        )

    async def reset_window(self, key: str) -> None:
        await self.client.delete(self._window_key(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
