from __future__ import annotations

import functools
from typing import List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from boxoffice.logging import get_logger
from boxoffice.storage.errors import StoreUnavailable

logger = get_logger(__name__)


def _redis_op(func):
    """Translate client errors into :class:`StoreUnavailable`."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=func.__name__, error=str(exc))
            raise StoreUnavailable("redis", str(exc)) from exc

    return wrapper


class RedisCache:
    """Redis-backed revocation list, lockout counters and login history."""

    # Atomic failure count: already locked -> report; else INCR (window set on
    # first failure) and convert to a lock when the threshold is reached.
    _FAILURE_SCRIPT = """
local unlock = redis.call('GET', KEYS[1])
if unlock then
  return {1, -1, unlock}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
  local unlock_at = tostring(tonumber(ARGV[4]) + tonumber(ARGV[3]))
  redis.call('SET', KEYS[1], unlock_at, 'EX', ARGV[3])
  redis.call('DEL', KEYS[2])
  return {1, attempts, unlock_at}
end

return {0, attempts, ''}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._failure_script = self.client.register_script(self._FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_redis_op
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @_redis_op
    async def put(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.client.set(key, "1", ex=ttl_seconds)

    @_redis_op
    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    @_redis_op
    async def claim(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.set(key, "1", ex=max(1, ttl_seconds), nx=True))

    @_redis_op
    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, ttl_seconds))

    @_redis_op
    async def get_value(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_redis_op
    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)

    @_redis_op
    async def lock_state(self, lock_key: str, attempts_key: str) -> Tuple[Optional[float], int]:
        unlock, attempts = await self.client.mget(lock_key, attempts_key)
        try:
            return (float(unlock) if unlock else None, int(attempts or 0))
        except ValueError:
            logger.warning("lockout_state_malformed", lock_key=lock_key)
            return (None, 0)

    @_redis_op
    async def record_failure(
        self,
        lock_key: str,
        attempts_key: str,
        *,
        threshold: int,
        window_seconds: int,
        duration_seconds: int,
        now: float,
    ) -> Tuple[bool, int, Optional[float]]:
        result = await self._failure_script(
            keys=[lock_key, attempts_key],
            args=[threshold, window_seconds, duration_seconds, now],
        )
        locked, attempts, unlock = result
        return bool(int(locked)), int(attempts), float(unlock) if unlock else None

    @_redis_op
    async def push_event(self, key: str, payload: str, *, max_len: int, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.lpush(key, payload)
        pipe.ltrim(key, 0, max_len - 1)
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    @_redis_op
    async def recent_events(self, key: str, limit: int) -> List[str]:
        return await self.client.lrange(key, 0, limit - 1)

    async def close(self) -> None:
        await self.client.aclose()
