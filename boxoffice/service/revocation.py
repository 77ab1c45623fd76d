from __future__ import annotations

from boxoffice.service.errors import DependencyUnavailableError
from boxoffice.storage.errors import StoreUnavailable


class RevocationStore:
    """Denylist of token identifiers, each kept only until the token expires.

    Lookups fail closed: a backend error surfaces as
    :class:`DependencyUnavailableError`, never as "not revoked".
    """

    def __init__(self, cache, *, prefix: str = "revoked") -> None:
        self.cache = cache
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def put(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.cache.put(self._key(key), int(ttl_seconds))
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("revocation_store") from exc

    async def exists(self, key: str) -> bool:
        try:
            return await self.cache.exists(self._key(key))
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("revocation_store") from exc

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """Mark ``key`` revoked; False if some caller already did."""
        try:
            return await self.cache.claim(self._key(key), int(ttl_seconds))
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("revocation_store") from exc
