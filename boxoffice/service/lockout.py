from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from boxoffice.logging import get_logger
from boxoffice.service.errors import DependencyUnavailableError
from boxoffice.storage.errors import StoreUnavailable

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    unlock_at: Optional[datetime] = None
    attempts: int = 0
    remaining_attempts: int = 0


class LockoutGuard:
    """Counts failures per identifier and locks it once a threshold is hit.

    The counter's window starts at the first failure. Reaching ``threshold``
    inside the window replaces the counter with a lock marker that expires
    after ``duration_seconds``. Increment and lock happen in one atomic
    backend step, so a burst of concurrent failures locks exactly once.
    """

    def __init__(
        self,
        cache,
        *,
        threshold: int,
        window_seconds: int,
        duration_seconds: int,
        namespace: str = "login",
        now: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.duration_seconds = duration_seconds
        self.namespace = namespace
        self.now = now

    @classmethod
    def from_settings(cls, cache, settings, **kwargs) -> "LockoutGuard":
        return cls(
            cache,
            threshold=settings.lockout_threshold,
            window_seconds=settings.lockout_window_seconds,
            duration_seconds=settings.lockout_duration_seconds,
            **kwargs,
        )

    def _keys(self, identifier: str) -> Tuple[str, str]:
        digest = hashlib.sha256((identifier or "").strip().lower().encode()).hexdigest()
        return (
            f"lockout:{self.namespace}:lock:{digest}",
            f"lockout:{self.namespace}:attempts:{digest}",
        )

    @staticmethod
    def _to_datetime(ts: Optional[float]) -> Optional[datetime]:
        return datetime.fromtimestamp(ts, tz=timezone.utc) if ts else None

    async def check(self, identifier: str) -> LockoutStatus:
        lock_key, attempts_key = self._keys(identifier)
        try:
            unlock_ts, attempts = await self.cache.lock_state(lock_key, attempts_key)
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("lockout_store") from exc
        if unlock_ts is not None and unlock_ts > self.now():
            return LockoutStatus(locked=True, unlock_at=self._to_datetime(unlock_ts), attempts=attempts)
        return LockoutStatus(
            locked=False,
            attempts=attempts,
            remaining_attempts=max(0, self.threshold - attempts),
        )

    async def record(self, identifier: str, success: bool) -> LockoutStatus:
        lock_key, attempts_key = self._keys(identifier)
        try:
            if success:
                await self.cache.delete(attempts_key)
                return LockoutStatus(locked=False, remaining_attempts=self.threshold)
            locked, attempts, unlock_ts = await self.cache.record_failure(
                lock_key,
                attempts_key,
                threshold=self.threshold,
                window_seconds=self.window_seconds,
                duration_seconds=self.duration_seconds,
                now=self.now(),
            )
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("lockout_store") from exc

        if locked:
            # attempts == -1 means the lock already existed before this call
            if attempts >= 0:
                logger.warning(
                    "lockout_triggered",
                    namespace=self.namespace,
                    attempts=attempts,
                    duration_seconds=self.duration_seconds,
                )
            return LockoutStatus(
                locked=True,
                unlock_at=self._to_datetime(unlock_ts),
                attempts=max(attempts, self.threshold),
            )
        return LockoutStatus(
            locked=False,
            attempts=attempts,
            remaining_attempts=max(0, self.threshold - attempts),
        )

    async def clear(self, identifier: str) -> None:
        """Drop both the counter and any active lock."""
        lock_key, attempts_key = self._keys(identifier)
        try:
            await self.cache.delete(lock_key, attempts_key)
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("lockout_store") from exc
