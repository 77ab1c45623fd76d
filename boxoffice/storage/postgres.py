from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from boxoffice.logging import get_logger
from boxoffice.service.passwords import PasswordService
from boxoffice.storage.common import SecretCipher, normalize_email, parse_backup_codes
from boxoffice.storage.errors import ConstraintViolation, StoreUnavailable
from boxoffice.storage.models import CredentialRecord, utcnow


class PostgresStore:
    """Postgres-backed user directory for back-office accounts."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        passwords: Optional[PasswordService] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
            },
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self._passwords = passwords or PasswordService()
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the ``backoffice_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backoffice_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT,
                    role TEXT NOT NULL DEFAULT 'STAFF',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    token_version INTEGER NOT NULL DEFAULT 1,
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_secret TEXT,
                    backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
                    last_login_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def _row_to_record(self, row: Optional[Dict[str, Any]]) -> Optional[CredentialRecord]:
        if not row:
            return None
        user_id = str(row["id"])
        return CredentialRecord(
            id=user_id,
            email=row["email"],
            password_hash=row.get("password_hash"),
            role=row.get("role", "STAFF"),
            is_active=row.get("is_active", True),
            token_version=int(row.get("token_version") or 1),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            backup_code_hashes=parse_backup_codes(row.get("backup_codes"), user_id=user_id),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _valid_id(user_id: str) -> bool:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return False
        return True

    def create_user(
        self,
        email: str,
        password_hash: Optional[str],
        *,
        role: str = "STAFF",
        is_active: bool = True,
    ) -> CredentialRecord:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO backoffice_user (id, email, password_hash, role, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalize_email(email), password_hash, role, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._row_to_record(row)

    def find_by_email(self, email: str) -> Optional[CredentialRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM backoffice_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_record(row)

    def find_by_id(self, user_id: str) -> Optional[CredentialRecord]:
        if not self._valid_id(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM backoffice_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_record(row)

    def list_users(self, *, offset: int = 0, limit: int = 20) -> Tuple[List[CredentialRecord], int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM backoffice_user ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
            total = conn.execute("SELECT COUNT(*) AS total FROM backoffice_user").fetchone()
        return [self._row_to_record(row) for row in rows], int(total["total"])

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE backoffice_user SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    def increment_token_version(self, user_id: str) -> Optional[int]:
        if not self._valid_id(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE backoffice_user SET token_version = token_version + 1
                WHERE id = %s
                RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    def compare_secret(self, stored_hash: Optional[str], plaintext: str) -> bool:
        return self._passwords.verify(stored_hash, plaintext)

    def _update(self, sql: str, params: tuple) -> bool:
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def set_password(self, user_id: str, password_hash: str) -> bool:
        return self._update(
            "UPDATE backoffice_user SET password_hash = %s WHERE id = %s",
            (password_hash, user_id),
        )

    def set_role(self, user_id: str, role: str) -> bool:
        return self._update(
            "UPDATE backoffice_user SET role = %s WHERE id = %s", (role, user_id)
        )

    def set_active(self, user_id: str, is_active: bool) -> bool:
        return self._update(
            "UPDATE backoffice_user SET is_active = %s WHERE id = %s", (is_active, user_id)
        )

    def set_two_factor_secret(self, user_id: str, secret: str) -> bool:
        return self._update(
            """
            UPDATE backoffice_user SET two_factor_secret = %s
            WHERE id = %s AND NOT two_factor_enabled
            """,
            (self._cipher.encrypt(secret), user_id),
        )

    def enable_two_factor(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        return self._update(
            """
            UPDATE backoffice_user
            SET two_factor_enabled = TRUE, backup_codes = %s
            WHERE id = %s AND NOT two_factor_enabled AND two_factor_secret IS NOT NULL
            """,
            (Jsonb(list(backup_code_hashes)), user_id),
        )

    def disable_two_factor(self, user_id: str) -> bool:
        return self._update(
            """
            UPDATE backoffice_user
            SET two_factor_enabled = FALSE, two_factor_secret = NULL, backup_codes = '[]'::jsonb
            WHERE id = %s
            """,
            (user_id,),
        )

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        return self._update(
            "UPDATE backoffice_user SET backup_codes = %s WHERE id = %s AND two_factor_enabled",
            (Jsonb(list(backup_code_hashes)), user_id),
        )

    def remove_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Remove one stored hash; the row filter makes concurrent use single-winner."""
        return self._update(
            """
            UPDATE backoffice_user SET backup_codes = backup_codes - %s::text
            WHERE id = %s AND backup_codes ? %s::text
            """,
            (code_hash, user_id, code_hash),
        )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
