"""Brute-force lockout counters and lock markers."""

import asyncio

from boxoffice.service.lockout import LockoutGuard


def _guard(cache, clock, threshold=3):
    return LockoutGuard(
        cache, threshold=threshold, window_seconds=600, duration_seconds=900, now=clock
    )


class TestLockoutGuard:
    async def test_locks_at_threshold(self, cache, clock):
        guard = _guard(cache, clock)
        first = await guard.record("ops@example.com", False)
        second = await guard.record("ops@example.com", False)
        assert not first.locked and first.remaining_attempts == 2
        assert not second.locked and second.remaining_attempts == 1

        third = await guard.record("ops@example.com", False)
        assert third.locked
        assert third.unlock_at is not None
        assert third.unlock_at.timestamp() == clock() + 900

        status = await guard.check("ops@example.com")
        assert status.locked

    async def test_identifier_is_case_insensitive(self, cache, clock):
        guard = _guard(cache, clock, threshold=2)
        await guard.record("Ops@Example.com", False)
        await guard.record("ops@example.com ", False)
        assert (await guard.check("OPS@EXAMPLE.COM")).locked

    async def test_lock_expires(self, cache, clock):
        guard = _guard(cache, clock, threshold=1)
        await guard.record("ops@example.com", False)
        clock.advance(901)
        status = await guard.check("ops@example.com")
        assert not status.locked
        assert status.attempts == 0

    async def test_success_resets_counter(self, cache, clock):
        guard = _guard(cache, clock)
        await guard.record("ops@example.com", False)
        await guard.record("ops@example.com", False)
        await guard.record("ops@example.com", True)
        status = await guard.record("ops@example.com", False)
        assert not status.locked
        assert status.attempts == 1

    async def test_window_starts_at_first_failure(self, cache, clock):
        guard = _guard(cache, clock)
        await guard.record("ops@example.com", False)
        clock.advance(500)
        await guard.record("ops@example.com", False)
        # The second failure does not extend the window
        clock.advance(101)
        status = await guard.record("ops@example.com", False)
        assert not status.locked
        assert status.attempts == 1

    async def test_concurrent_burst_locks_once(self, cache, clock):
        guard = _guard(cache, clock, threshold=5)
        results = await asyncio.gather(
            *(guard.record("ops@example.com", False) for _ in range(20))
        )
        assert sum(1 for r in results if not r.locked) == 4
        # Later failures see the existing lock instead of re-arming it
        unlock_times = {r.unlock_at for r in results if r.locked}
        assert len(unlock_times) == 1

    async def test_clear_lifts_lock(self, cache, clock):
        guard = _guard(cache, clock, threshold=1)
        await guard.record("ops@example.com", False)
        await guard.clear("ops@example.com")
        assert not (await guard.check("ops@example.com")).locked

    async def test_namespaces_are_independent(self, cache, clock):
        login = _guard(cache, clock, threshold=1)
        two_factor = LockoutGuard(
            cache, threshold=1, window_seconds=300, duration_seconds=300, namespace="2fa", now=clock
        )
        await login.record("user-1", False)
        assert not (await two_factor.check("user-1")).locked
