from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Tuple, TypeVar

from boxoffice.service.errors import DependencyUnavailableError
from boxoffice.storage.errors import StoreUnavailable
from boxoffice.storage.models import CredentialRecord

T = TypeVar("T")


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        role: str = "STAFF",
        is_active: bool = True,
    ) -> CredentialRecord: ...

    def find_by_email(self, email: str) -> Optional[CredentialRecord]: ...

    def find_by_id(self, user_id: str) -> Optional[CredentialRecord]: ...

    def list_users(self, *, offset: int = 0, limit: int = 20) -> Tuple[List[CredentialRecord], int]: ...

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...

    def increment_token_version(self, user_id: str) -> Optional[int]: ...

    def compare_secret(self, stored_hash: Optional[str], plaintext: str) -> bool: ...

    def set_password(self, user_id: str, password_hash: str) -> bool: ...

    def set_role(self, user_id: str, role: str) -> bool: ...

    def set_active(self, user_id: str, is_active: bool) -> bool: ...

    def set_two_factor_secret(self, user_id: str, secret: str) -> bool: ...

    def enable_two_factor(self, user_id: str, backup_code_hashes: List[str]) -> bool: ...

    def disable_two_factor(self, user_id: str) -> bool: ...

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool: ...

    def remove_backup_code(self, user_id: str, code_hash: str) -> bool: ...


async def run_blocking(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking directory or hashing call off the event loop.

    Storage outages surface as :class:`DependencyUnavailableError`.
    """
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except StoreUnavailable as exc:
        raise DependencyUnavailableError("user_directory") from exc
