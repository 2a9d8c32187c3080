from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits and second-factor lockouts."""

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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Records a failed attempt and sets the lockout atomically
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
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
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so emails and user ids cannot collide on delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _mfa_keys(user_id: str) -> tuple[str, str]:
        return f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Consume from a token bucket of ``limit`` tokens refilled over ``window_seconds``."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def check_mfa_lockout(self, user_id: str) -> bool:
        lockout_key, _ = self._mfa_keys(user_id)
        return bool(await self.client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed verification.

        Returns:
            (locked_out, attempts); attempts is -1 when the lockout was already active
        """
        result = await self._mfa_attempt(
            keys=list(self._mfa_keys(user_id)), args=[max_attempts, lockout_seconds]
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        _, attempts_key = self._mfa_keys(user_id)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._mfa_attempt = self._sync_client.register_script(
            RedisCache._MFA_ATTEMPT_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def check_mfa_lockout(self, user_id: str) -> bool:
        lockout_key, _ = RedisCache._mfa_keys(user_id)
        return bool(self._sync_client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(
            keys=list(RedisCache._mfa_keys(user_id)), args=[max_attempts, lockout_seconds]
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        _, attempts_key = RedisCache._mfa_keys(user_id)
        self._sync_client.delete(attempts_key)

    def disconnect(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.disconnect()


__all__ = ["RedisCache", "SyncRedisCache"]
