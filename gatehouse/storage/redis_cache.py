from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


def _parse_oauth_state(cached: Optional[str]) -> Optional[tuple[str, datetime]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    expires_at = datetime.now(timezone.utc)
    expires_raw = data.get("expires_at")
    if isinstance(expires_raw, str):
        try:
            expires_at = datetime.fromisoformat(expires_raw)
        except ValueError:
            pass
    return data.get("provider"), expires_at


class RedisCache:
    """Thin Redis wrapper for sessions, login rate limits and OAuth state."""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL in whole seconds from an absolute expiry, clamped to at least 1."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str) -> bool:
        return bool(await self.client.delete(f"auth:session:{session_id}"))

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        await pipe.execute()
        return len(session_ids)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token-bucket rate limit evaluated atomically inside Redis."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, 1]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically get and delete OAuth state so a callback cannot be replayed."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        return _parse_oauth_state(cached)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable interface as :class:`RedisCache` but runs
    blocking commands, so it never binds to a pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return self.client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str) -> bool:
        return bool(self.client.delete(f"auth:session:{session_id}"))

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        pipe.execute()
        return len(session_ids)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, 1]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self.client.set(
            f"auth:oauth:{state}",
            json.dumps(payload),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        return _parse_oauth_state(self.client.getdel(f"auth:oauth:{state}"))

    async def close(self) -> None:
        self.client.close()
