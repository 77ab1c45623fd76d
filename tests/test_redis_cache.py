"""RedisCache against a live server; skipped when none is reachable."""

import asyncio
import os
import time
import uuid

import pytest
from redis.exceptions import RedisError

from boxoffice.service.errors import DependencyUnavailableError
from boxoffice.service.lockout import LockoutGuard
from boxoffice.service.revocation import RevocationStore
from boxoffice.storage.errors import StoreUnavailable
from boxoffice.storage.redis_cache import RedisCache

REDIS_TEST_URL = os.environ.get("REDIS_TEST_URL", "redis://localhost:6379/15")


def _redis_available() -> bool:
    try:
        RedisCache(REDIS_TEST_URL, socket_timeout=0.5).verify_connection()
        return True
    except (RedisError, OSError):
        return False


requires_redis = pytest.mark.skipif(not _redis_available(), reason="redis not reachable")


def _key(name: str) -> str:
    return f"test:{uuid.uuid4().hex}:{name}"


@requires_redis
class TestRedisCache:
    async def test_claim_is_set_if_absent(self):
        cache = RedisCache(REDIS_TEST_URL)
        key = _key("claim")
        try:
            results = await asyncio.gather(*(cache.claim(key, 30) for _ in range(10)))
            assert results.count(True) == 1
            assert await cache.exists(key)
        finally:
            await cache.delete(key)
            await cache.close()

    async def test_failure_script_locks_once(self):
        cache = RedisCache(REDIS_TEST_URL)
        guard = LockoutGuard(
            cache, threshold=3, window_seconds=60, duration_seconds=120, namespace=_key("ns")
        )
        try:
            results = await asyncio.gather(*(guard.record("ops@example.com", False) for _ in range(8)))
            assert sum(1 for r in results if not r.locked) == 2
            assert len({r.unlock_at for r in results if r.locked}) == 1
            status = await guard.check("ops@example.com")
            assert status.locked
            assert status.unlock_at.timestamp() == pytest.approx(time.time() + 120, abs=5)
        finally:
            await guard.clear("ops@example.com")
            await cache.close()

    async def test_event_list_capped(self):
        cache = RedisCache(REDIS_TEST_URL)
        key = _key("events")
        try:
            for i in range(5):
                await cache.push_event(key, str(i), max_len=3, ttl_seconds=60)
            assert await cache.recent_events(key, 10) == ["4", "3", "2"]
        finally:
            await cache.delete(key)
            await cache.close()


class TestRedisUnavailable:
    async def test_unreachable_server_fails_closed(self):
        cache = RedisCache("redis://127.0.0.1:1/0", socket_timeout=0.2)
        try:
            with pytest.raises(StoreUnavailable):
                await cache.exists("anything")
            with pytest.raises(DependencyUnavailableError):
                await RevocationStore(cache).exists("jti")
        finally:
            await cache.close()
