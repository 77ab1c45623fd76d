from __future__ import annotations

import dataclasses
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from boxoffice.logging import get_logger
from boxoffice.service.passwords import PasswordService
from boxoffice.storage.common import SecretCipher, normalize_email
from boxoffice.storage.errors import ConstraintViolation
from boxoffice.storage.models import CredentialRecord, utcnow


class MemoryStore:
    """In-memory user directory for tests and local development."""

    def __init__(
        self,
        *,
        mfa_encryption_key: str,
        passwords: Optional[PasswordService] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, CredentialRecord] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)
        self._passwords = passwords or PasswordService()

    def _snapshot(self, record: Optional[CredentialRecord]) -> Optional[CredentialRecord]:
        if record is None:
            return None
        return dataclasses.replace(
            record,
            two_factor_secret=self._cipher.decrypt(record.two_factor_secret),
            backup_code_hashes=list(record.backup_code_hashes),
        )

    def create_user(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        role: str = "STAFF",
        is_active: bool = True,
    ) -> CredentialRecord:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            record = CredentialRecord.new(
                normalized, password_hash, role=role, is_active=is_active
            )
            self.users[record.id] = record
            self._email_index[normalized] = record.id
            return self._snapshot(record)

    def find_by_email(self, email: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            return self._snapshot(self.users.get(user_id)) if user_id else None

    def find_by_id(self, user_id: str) -> Optional[CredentialRecord]:
        with self._data_lock:
            return self._snapshot(self.users.get(user_id))

    def list_users(self, *, offset: int = 0, limit: int = 20) -> Tuple[List[CredentialRecord], int]:
        """Newest first, plus the total number of accounts."""
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: (u.created_at, u.id), reverse=True)
            page = ordered[offset : offset + limit]
            return [self._snapshot(u) for u in page], len(ordered)

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            record = self.users.get(user_id)
            if record:
                record.last_login_at = at or utcnow()

    def increment_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return None
            record.token_version += 1
            return record.token_version

    def compare_secret(self, stored_hash: Optional[str], plaintext: str) -> bool:
        return self._passwords.verify(stored_hash, plaintext)

    def set_password(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return False
            record.password_hash = password_hash
            return True

    def set_role(self, user_id: str, role: str) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return False
            record.role = role
            return True

    def set_active(self, user_id: str, is_active: bool) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return False
            record.is_active = is_active
            return True

    def set_two_factor_secret(self, user_id: str, secret: str) -> bool:
        """Store a pending secret; refused once two-factor is already enabled."""
        with self._data_lock:
            record = self.users.get(user_id)
            if not record or record.two_factor_enabled:
                return False
            record.two_factor_secret = self._cipher.encrypt(secret)
            return True

    def enable_two_factor(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record or record.two_factor_enabled or not record.two_factor_secret:
                return False
            record.two_factor_enabled = True
            record.backup_code_hashes = list(backup_code_hashes)
            return True

    def disable_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record:
                return False
            record.two_factor_enabled = False
            record.two_factor_secret = None
            record.backup_code_hashes = []
            return True

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        with self._data_lock:
            record = self.users.get(user_id)
            if not record or not record.two_factor_enabled:
                return False
            record.backup_code_hashes = list(backup_code_hashes)
            return True

    def remove_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Remove one stored hash; False when another caller already used it."""
        with self._data_lock:
            record = self.users.get(user_id)
            if not record or code_hash not in record.backup_code_hashes:
                return False
            record.backup_code_hashes.remove(code_hash)
            return True


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Mirrors the Redis key semantics (TTL, set-if-absent, capped lists) behind
    a single mutex. Only safe for a single process.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lists: Dict[str, Tuple[List[str], Optional[float]]] = {}

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _live_list(self, key: str) -> List[str]:
        entry = self._lists.get(key)
        if entry is None:
            return []
        items, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._lists.pop(key, None)
            return []
        return items

    async def ping(self) -> bool:
        return True

    async def put(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._values[key] = ("1", self._expiry(ttl_seconds))

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_value(key) is not None

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._values[key] = ("1", self._expiry(max(1, ttl_seconds)))
            return True

    async def set_value(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._expiry(max(1, ttl_seconds)))

    async def get_value(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._values.pop(key, None)
                self._lists.pop(key, None)

    async def lock_state(self, lock_key: str, attempts_key: str) -> Tuple[Optional[float], int]:
        with self._lock:
            unlock = self._live_value(lock_key)
            attempts = self._live_value(attempts_key)
            return (float(unlock) if unlock else None, int(attempts or 0))

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
        with self._lock:
            existing = self._live_value(lock_key)
            if existing is not None:
                return True, -1, float(existing)
            entry = self._values.get(attempts_key)
            attempts = int(self._live_value(attempts_key) or 0) + 1
            # The window starts at the first failure and is not extended
            expires_at = entry[1] if entry and attempts > 1 else self._expiry(window_seconds)
            if attempts >= threshold:
                unlock_at = now + duration_seconds
                self._values[lock_key] = (str(unlock_at), self._expiry(duration_seconds))
                self._values.pop(attempts_key, None)
                return True, attempts, unlock_at
            self._values[attempts_key] = (str(attempts), expires_at)
            return False, attempts, None

    async def push_event(self, key: str, payload: str, *, max_len: int, ttl_seconds: int) -> None:
        with self._lock:
            items = [payload, *self._live_list(key)][:max_len]
            self._lists[key] = (items, self._expiry(ttl_seconds))

    async def recent_events(self, key: str, limit: int) -> List[str]:
        with self._lock:
            return list(self._live_list(key)[:limit])

    async def close(self) -> None:
        return None
