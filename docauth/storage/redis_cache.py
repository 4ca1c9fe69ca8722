"""Redis-backed counters for the auth endpoints.

Two things live here: token buckets that throttle login, recovery and TOTP
attempts, and one-shot claims on accepted TOTP time steps so a code cannot be
used twice. Both are short-lived keys; nothing in Redis is authoritative
account state.
"""

from __future__ import annotations

import hashlib
import time
from typing import Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket; ARGV now, refill per second, capacity, cost.
# Returns {allowed, tokens left, seconds until enough tokens}.
_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local last = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)

local allowed = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait = math.ceil((cost - tokens) / rate)
end

redis.call('HSET', bucket, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate), wait))
return {allowed, tokens, wait}
"""

RateResult = Union[bool, Tuple[bool, int, int]]


def rate_key(subject: str) -> str:
    """Redis key for a rate limit subject such as ``login:alice``.

    Subjects carry user input, so they are hashed rather than embedded.
    """
    return "auth:rate:" + hashlib.sha256(subject.encode("utf-8")).hexdigest()


def totp_claim_key(user_id: str, step: int) -> str:
    return f"auth:totp:used:{user_id}:{step}"


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _bucket_result(reply: Sequence, return_remaining: bool) -> RateResult:
    allowed, tokens, wait = reply
    allowed = bool(int(allowed))
    if return_remaining:
        return allowed, max(0, int(float(tokens))), int(wait or 0)
    return allowed


class RedisCache:
    """asyncio client used by the running service."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        # a throwaway sync client; the async pool must not bind to the startup loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateResult:
        reply = await self._bucket(
            keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(reply, return_remaining)

    async def claim_totp_step(self, user_id: str, step: int, ttl_seconds: int) -> bool:
        """Claim ``step`` for ``user_id``; False if it was already claimed."""
        claimed = await self.client.set(
            totp_claim_key(user_id, step), "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(claimed)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Blocking client with the same awaitable surface, for TEST_MODE.

    pytest runs each async test in its own event loop; a sync client keeps
    the connection pool independent of them.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateResult:
        reply = self._bucket(keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _bucket_result(reply, return_remaining)

    async def claim_totp_step(self, user_id: str, step: int, ttl_seconds: int) -> bool:
        claimed = self.client.set(
            totp_claim_key(user_id, step), "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(claimed)

    async def close(self) -> None:
        self.client.close()


CacheBackend = Optional[Union[RedisCache, SyncRedisCache]]
