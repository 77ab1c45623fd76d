"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from boxoffice.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class SecretCipher:
    """Fernet encryption for two-factor secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Two-factor encryption key material is required")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        """Decrypt a stored secret; an undecryptable value yields ``None``.

        A secret that cannot be decrypted (rotated key, corrupted row) is
        unusable for TOTP, so callers see the account as having no secret.
        """
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None


def parse_backup_codes(raw: Any, *, user_id: str) -> List[str]:
    """Normalise a stored backup-code column into a list of hashes.

    Older rows stored the list as a JSON string. Anything that is not a list
    of strings is logged and treated as "no codes left".
    """
    if raw is None:
        return []
    value = raw
    if isinstance(raw, (bytes, str)):
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("backup_codes_malformed", user_id=user_id, reason="json")
            return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        logger.warning("backup_codes_malformed", user_id=user_id, reason="shape")
        return []
    return list(value)
