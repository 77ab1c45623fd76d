from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

import qrcode

from boxoffice.logging import get_logger
from boxoffice.service.directory import UserDirectory, run_blocking
from boxoffice.service.errors import (
    AccountLockedError,
    AlreadyEnabledError,
    InvalidBackupCodeError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidPasswordError,
    NotEnabledError,
)
from boxoffice.service.lockout import LockoutGuard
from boxoffice.service.passwords import PasswordService
from boxoffice.storage.models import CredentialRecord

logger = get_logger(__name__)

TOTP_STEP_SECONDS = 30
TOTP_DIGITS = 6
# Accept codes up to two steps either side of now (about one minute of drift)
TOTP_WINDOW = 2
BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
# No 0/O or 1/I so codes survive being read aloud or copied by hand
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    otpauth_url: str
    qr_code_data_url: str


def generate_totp(secret: str, timestamp: float, *, step: int = TOTP_STEP_SECONDS, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string on a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = struct.pack(">Q", int(timestamp // step))
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch not in "- ")


def _qr_data_url(payload: str) -> str:
    qr = qrcode.QRCode(box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer)
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class TwoFactorService:
    """TOTP enrollment and verification plus single-use backup codes.

    Lifecycle per account: disabled, secret generated (pending), enabled,
    and back to disabled. Failed verifications feed a dedicated lockout
    namespace keyed by user id.
    """

    def __init__(
        self,
        directory: UserDirectory,
        passwords: PasswordService,
        guard: LockoutGuard,
        *,
        issuer: str = "BoxOffice",
        now: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.passwords = passwords
        self.guard = guard
        self.issuer = issuer
        self.now = now

    def verify_totp(self, secret: Optional[str], code: str, *, at: Optional[float] = None) -> bool:
        if not secret:
            return False
        candidate = (code or "").replace(" ", "")
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        timestamp = self.now() if at is None else at
        matched = False
        # Check every step in the window so timing does not reveal which one matched
        for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
            generated = generate_totp(secret, timestamp + offset * TOTP_STEP_SECONDS)
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def otpauth_url(self, secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_STEP_SECONDS,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def new_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    @staticmethod
    def new_backup_codes() -> List[str]:
        return [
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(BACKUP_CODE_COUNT)
        ]

    async def _load(self, user_id: str) -> CredentialRecord:
        user = await run_blocking(self.directory.find_by_id, user_id)
        if not user:
            raise InvalidCredentialsError()
        return user

    async def _hash_codes(self, codes: List[str]) -> List[str]:
        return await run_blocking(lambda: [self.passwords.hash(code) for code in codes])

    async def _require_password(self, user: CredentialRecord, password: str) -> None:
        if not await run_blocking(self.directory.compare_secret, user.password_hash, password or ""):
            logger.warning("two_factor_password_rejected", user_id=user.id)
            raise InvalidPasswordError()

    async def generate_secret(self, user_id: str) -> TwoFactorEnrollment:
        user = await self._load(user_id)
        if user.two_factor_enabled:
            raise AlreadyEnabledError()
        secret = self.new_secret()
        if not await run_blocking(self.directory.set_two_factor_secret, user_id, secret):
            # Enabled concurrently between the read and the write
            raise AlreadyEnabledError()
        uri = self.otpauth_url(secret, user.email)
        logger.info("two_factor_secret_generated", user_id=user_id)
        return TwoFactorEnrollment(secret=secret, otpauth_url=uri, qr_code_data_url=_qr_data_url(uri))

    async def confirm_enable(self, user_id: str, code: str) -> List[str]:
        """Turn two-factor on after proving the authenticator works.

        Returns the plaintext backup codes; they are never retrievable again.
        """
        user = await self._load(user_id)
        if user.two_factor_enabled:
            raise AlreadyEnabledError()
        if not user.two_factor_secret:
            raise NotEnabledError("Two-factor setup has not been started")
        await self._ensure_not_locked(user_id)
        if not self.verify_totp(user.two_factor_secret, code):
            await self._record_failure(user_id, InvalidCodeError())
        await self.guard.record(user_id, True)

        codes = self.new_backup_codes()
        hashes = await self._hash_codes(codes)
        if not await run_blocking(self.directory.enable_two_factor, user_id, hashes):
            raise AlreadyEnabledError()
        logger.info("two_factor_enabled", user_id=user_id)
        return codes

    async def verify(self, user_id: str, code: str, is_backup_code: bool = False) -> None:
        """Check a second factor for an enabled account; raises on failure."""
        user = await self._load(user_id)
        if not user.two_factor_enabled:
            raise NotEnabledError()
        await self._ensure_not_locked(user_id)

        if is_backup_code:
            if not await self._consume_backup_code(user, code):
                await self._record_failure(user_id, InvalidBackupCodeError())
            logger.info(
                "backup_code_used",
                user_id=user_id,
                remaining=max(0, len(user.backup_code_hashes) - 1),
            )
        elif not self.verify_totp(user.two_factor_secret, code):
            await self._record_failure(user_id, InvalidCodeError())
        await self.guard.record(user_id, True)

    async def disable(self, user_id: str, password: str) -> None:
        user = await self._load(user_id)
        if not user.two_factor_enabled and not user.two_factor_pending:
            raise NotEnabledError()
        await self._require_password(user, password)
        await run_blocking(self.directory.disable_two_factor, user_id)
        await self.guard.clear(user_id)
        logger.info("two_factor_disabled", user_id=user_id)

    async def regenerate_backup_codes(self, user_id: str, password: str) -> List[str]:
        user = await self._load(user_id)
        if not user.two_factor_enabled:
            raise NotEnabledError()
        await self._require_password(user, password)
        codes = self.new_backup_codes()
        hashes = await self._hash_codes(codes)
        if not await run_blocking(self.directory.replace_backup_codes, user_id, hashes):
            raise NotEnabledError()
        logger.info("backup_codes_regenerated", user_id=user_id)
        return codes

    async def _consume_backup_code(self, user: CredentialRecord, code: str) -> bool:
        normalized = normalize_backup_code(code)
        if len(normalized) != BACKUP_CODE_LENGTH:
            return False

        def _find_match() -> Optional[str]:
            match = None
            # Verify against every hash so the position of the match is not observable
            for stored in user.backup_code_hashes:
                if self.passwords.verify(stored, normalized) and match is None:
                    match = stored
            return match

        matched_hash = await run_blocking(_find_match)
        if not matched_hash:
            return False
        # Removal is conditional on the hash still being present, so two
        # concurrent uses of the same code cannot both succeed.
        return await run_blocking(self.directory.remove_backup_code, user.id, matched_hash)

    async def _ensure_not_locked(self, user_id: str) -> None:
        status = await self.guard.check(user_id)
        if status.locked:
            logger.warning("two_factor_locked_out", user_id=user_id)
            raise AccountLockedError(status.unlock_at, "Too many invalid codes; try again later")

    async def _record_failure(self, user_id: str, error: Exception) -> None:
        status = await self.guard.record(user_id, False)
        logger.warning(
            "two_factor_verification_failed",
            user_id=user_id,
            error_code=getattr(error, "error_code", None),
            remaining_attempts=status.remaining_attempts,
        )
        if status.locked:
            raise AccountLockedError(status.unlock_at, "Too many invalid codes; try again later")
        raise error
