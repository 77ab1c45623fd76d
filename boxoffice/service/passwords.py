from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from boxoffice.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing for account passwords and backup codes."""

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "PasswordService":
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_kib,
            parallelism=settings.password_hash_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, stored_hash: Optional[str], plaintext: str) -> bool:
        """Compare ``plaintext`` against ``stored_hash``.

        A missing hash still runs one full verification against a throwaway
        hash so that unknown accounts cost the same as wrong passwords.
        """
        if not stored_hash:
            self._burn(plaintext)
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unusable", error=str(exc))
            return False

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("boxoffice-dummy-password")
        return self._dummy_hash

    def _burn(self, plaintext: str) -> None:
        try:
            self._hasher.verify(self._get_dummy_hash(), plaintext)
        except VerificationError:
            pass
