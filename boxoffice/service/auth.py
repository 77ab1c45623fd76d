from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Coroutine, List, Optional, Set

from boxoffice.config import Settings
from boxoffice.logging import get_logger
from boxoffice.service.anomaly import AnomalyDetector
from boxoffice.service.directory import UserDirectory, run_blocking
from boxoffice.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    DependencyUnavailableError,
    InvalidCredentialsError,
    InvalidPasswordError,
    InvalidResetTokenError,
    NotFoundError,
    TokenRevokedError,
    TokenVersionMismatchError,
    TwoFactorRequiredError,
)
from boxoffice.service.geolocation import GeolocationResolver
from boxoffice.service.lockout import LockoutGuard
from boxoffice.service.notifications import LogNotificationSink, NotificationSink
from boxoffice.service.passwords import PasswordService
from boxoffice.service.revocation import RevocationStore
from boxoffice.service.tokens import ACCESS, REFRESH, TokenCodec, TokenPair, TokenSubject
from boxoffice.service.two_factor import TwoFactorEnrollment, TwoFactorService
from boxoffice.storage.common import normalize_email
from boxoffice.storage.errors import StoreUnavailable
from boxoffice.storage.models import CredentialRecord

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """The authenticated principal behind a verified access token."""

    user_id: str
    email: str
    role: str
    token_version: int
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    user: CredentialRecord
    tokens: TokenPair


@dataclass(frozen=True)
class UserPage:
    users: List[CredentialRecord]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


class AuthService:
    """Login, token lifecycle, password and two-factor flows.

    Composes the token codec, revocation list, lockout guard, two-factor
    service and anomaly detector on top of a user directory. Every public
    operation is a coroutine; blocking directory and hashing calls run in
    worker threads so concurrent requests never share a held lock.
    """

    def __init__(
        self,
        directory: UserDirectory,
        cache,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        tokens: Optional[TokenCodec] = None,
        resolver: Optional[GeolocationResolver] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.directory = directory
        self.cache = cache
        self.settings = settings
        self.passwords = passwords or PasswordService.from_settings(settings)
        self.tokens = tokens or TokenCodec.from_settings(settings)
        self.revocation = RevocationStore(cache)
        self.lockout = LockoutGuard.from_settings(cache, settings, now=self.tokens.now)
        self.two_factor = TwoFactorService(
            directory,
            self.passwords,
            LockoutGuard(
                cache,
                threshold=settings.two_factor_max_attempts,
                window_seconds=settings.two_factor_lockout_seconds,
                duration_seconds=settings.two_factor_lockout_seconds,
                namespace="2fa",
                now=self.tokens.now,
            ),
            issuer=settings.totp_issuer,
            now=self.tokens.now,
        )
        self.resolver = resolver or GeolocationResolver(
            cache,
            enabled=settings.geolocation_enabled,
            cache_seconds=settings.geolocation_cache_seconds,
            timeout_seconds=settings.dependency_timeout_seconds,
        )
        self.anomaly = AnomalyDetector.from_settings(cache, self.resolver, settings, now=self.tokens.now)
        self.notifier: NotificationSink = notifier or LogNotificationSink()
        self.logger = logger
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _issue(self, user: CredentialRecord) -> TokenPair:
        return self.tokens.issue(
            TokenSubject(
                user_id=user.id,
                email=user.email,
                role=user.role,
                token_version=user.token_version,
            )
        )

    async def _load_user(self, user_id: str) -> CredentialRecord:
        user = await run_blocking(self.directory.find_by_id, user_id)
        if not user:
            raise InvalidCredentialsError()
        return user

    def _schedule(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background_tasks(self) -> None:
        """Wait for scheduled post-login work (tests and shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------

    async def create_user(
        self, email: str, password: str, *, role: str = "STAFF", is_active: bool = True
    ) -> CredentialRecord:
        password_hash = await run_blocking(self.passwords.hash, password)
        user = await run_blocking(
            self.directory.create_user, email, password_hash, role=role, is_active=is_active
        )
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    async def get_user(self, user_id: str) -> CredentialRecord:
        user = await run_blocking(self.directory.find_by_id, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def list_users(self, page: int = 1, limit: int = 20) -> UserPage:
        page, limit = max(1, page), max(1, limit)
        users, total = await run_blocking(
            self.directory.list_users, offset=(page - 1) * limit, limit=limit
        )
        return UserPage(users=users, page=page, limit=limit, total=total)

    async def update_user(
        self, user_id: str, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> CredentialRecord:
        """Change role and/or active flag. Deactivation also ends every session."""
        user = await self.get_user(user_id)
        if role is not None and role != user.role:
            await run_blocking(self.directory.set_role, user_id, role)
            self.logger.info("user_role_changed", user_id=user_id, role=role)
        if is_active is not None and is_active != user.is_active:
            await run_blocking(self.directory.set_active, user_id, is_active)
            if not is_active:
                await self.logout_everywhere(user_id)
            self.logger.info("user_active_changed", user_id=user_id, is_active=is_active)
        return await self.get_user(user_id)

    # ------------------------------------------------------------------
    # login / refresh / verify / logout
    # ------------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        ip: str,
        two_factor_code: Optional[str] = None,
        is_backup_code: bool = False,
    ) -> LoginResult:
        identifier = normalize_email(email)
        status = await self.lockout.check(identifier)
        if status.locked:
            self.logger.warning("login_rejected_locked", email_hash=_email_hash(identifier))
            raise AccountLockedError(status.unlock_at)

        user = await run_blocking(self.directory.find_by_email, identifier)
        usable = user is not None and user.is_active
        # Unknown and inactive accounts still pay for one full hash comparison
        matched = await run_blocking(
            self.directory.compare_secret,
            user.password_hash if usable else None,
            password or "",
        )
        if not usable or not matched:
            reason = "unknown_user" if user is None else ("inactive" if not user.is_active else "bad_password")
            await self._login_failed(identifier, reason)

        if user.two_factor_enabled:
            if not two_factor_code:
                raise TwoFactorRequiredError()
            await self.two_factor.verify(user.id, two_factor_code, is_backup_code)
        # Password failures are only forgiven once every factor has passed
        await self.lockout.record(identifier, True)

        tokens = self._issue(user)
        await run_blocking(self.directory.update_last_login, user.id)
        self.logger.info("login_succeeded", user_id=user.id, two_factor=user.two_factor_enabled)
        self._schedule(self._after_login(user, ip))
        return LoginResult(user=user, tokens=tokens)

    async def _login_failed(self, identifier: str, reason: str) -> None:
        status = await self.lockout.record(identifier, False)
        self.logger.warning(
            "login_failed",
            email_hash=_email_hash(identifier),
            reason=reason,
            remaining_attempts=status.remaining_attempts,
        )
        if status.locked:
            raise AccountLockedError(status.unlock_at)
        raise InvalidCredentialsError()

    async def _after_login(self, user: CredentialRecord, ip: str) -> None:
        """Impossible-travel check; its outcome never reaches the caller."""
        try:
            result = await self.anomaly.check(user.id, ip)
            await self.anomaly.record_login(user.id, ip, result.coordinate)
            if result.suspicious:
                await self.notifier.suspicious_login(user, result.reason or "", ip)
        except Exception as exc:
            self.logger.error(
                "post_login_analysis_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.tokens.verify(refresh_token, REFRESH)
        user = await run_blocking(self.directory.find_by_id, claims.sub)
        if not user:
            raise InvalidCredentialsError()
        if claims.tv != user.token_version:
            self.logger.info("refresh_rejected_stale_version", user_id=user.id)
            raise TokenVersionMismatchError()
        if not user.is_active:
            raise InvalidCredentialsError()
        # One-shot: the first caller to claim this jti wins the rotation
        if not await self.revocation.claim(claims.jti, self.tokens.revocation_ttl(claims)):
            self.logger.warning("refresh_token_reused", user_id=user.id)
            raise TokenRevokedError()
        return self._issue(user)

    async def verify_request(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify(access_token, ACCESS)
        if await self.revocation.exists(claims.jti):
            raise TokenRevokedError()
        user = await run_blocking(self.directory.find_by_id, claims.sub)
        if not user:
            raise InvalidCredentialsError()
        if claims.tv != user.token_version:
            if claims.tv < user.token_version:
                await self.revocation.put(claims.jti, self.tokens.revocation_ttl(claims))
            raise TokenVersionMismatchError()
        if not user.is_active:
            raise AccountInactiveError()
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            token_version=user.token_version,
            jti=claims.jti,
            expires_at=datetime.fromtimestamp(claims.exp, tz=timezone.utc),
        )

    async def logout(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        """Best-effort revocation of the presented tokens; never raises."""
        for token, kind in ((access_token, ACCESS), (refresh_token, REFRESH)):
            if not token:
                continue
            claims = self.tokens.peek(token, kind)
            if claims is None:
                continue
            try:
                await self.revocation.put(claims.jti, self.tokens.revocation_ttl(claims))
            except DependencyUnavailableError as exc:
                self.logger.warning("logout_revocation_failed", token_type=claims.typ, error=str(exc))

    async def logout_everywhere(self, user_id: str) -> int:
        version = await run_blocking(self.directory.increment_token_version, user_id)
        if version is None:
            raise InvalidCredentialsError()
        self.logger.info("sessions_revoked", user_id=user_id, token_version=version)
        return version

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> TokenPair:
        """Replace the password and hand back tokens for the new token version."""
        user = await self._load_user(user_id)
        if not await run_blocking(self.directory.compare_secret, user.password_hash, current_password or ""):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise InvalidPasswordError("Current password is incorrect")
        new_hash = await run_blocking(self.passwords.hash, new_password)
        await run_blocking(self.directory.set_password, user_id, new_hash)
        await self.logout_everywhere(user_id)
        self.logger.info("password_changed", user_id=user_id)
        return self._issue(await self._load_user(user_id))

    def _reset_key(self, token: str) -> str:
        return f"reset:{hashlib.sha256(token.encode()).hexdigest()}"

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Mint a single-use reset token, or ``None`` for unknown accounts.

        Callers must respond identically either way.
        """
        identifier = normalize_email(email)
        user = await run_blocking(self.directory.find_by_email, identifier)
        if not user or not user.is_active:
            self.logger.info("password_reset_unknown_account", email_hash=_email_hash(identifier))
            return None
        token = secrets.token_urlsafe(32)
        try:
            await self.cache.set_value(
                self._reset_key(token), user.id, self.settings.password_reset_ttl_minutes * 60
            )
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("reset_token_store") from exc
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> None:
        key = self._reset_key(token or "")
        try:
            user_id = await self.cache.get_value(key)
        except StoreUnavailable as exc:
            raise DependencyUnavailableError("reset_token_store") from exc
        if not user_id:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidResetTokenError()
        if not await self.revocation.claim(key, self.settings.password_reset_ttl_minutes * 60):
            self.logger.warning("password_reset_token_reused", user_id=user_id)
            raise InvalidResetTokenError()
        try:
            await self.cache.delete(key)
        except StoreUnavailable as exc:
            self.logger.warning("password_reset_token_cleanup_failed", error=str(exc))

        user = await run_blocking(self.directory.find_by_id, user_id)
        if not user:
            raise InvalidResetTokenError()
        new_hash = await run_blocking(self.passwords.hash, new_password)
        await run_blocking(self.directory.set_password, user.id, new_hash)
        await self.logout_everywhere(user.id)
        await self.lockout.clear(user.email)
        self.logger.info("password_reset_completed", user_id=user.id)

    # ------------------------------------------------------------------
    # two-factor
    # ------------------------------------------------------------------

    async def begin_two_factor(self, user_id: str) -> TwoFactorEnrollment:
        return await self.two_factor.generate_secret(user_id)

    async def enable_two_factor(self, user_id: str, code: str) -> List[str]:
        codes = await self.two_factor.confirm_enable(user_id, code)
        user = await self._load_user(user_id)
        self._schedule(self._notify_two_factor_enabled(user))
        return codes

    async def _notify_two_factor_enabled(self, user: CredentialRecord) -> None:
        try:
            await self.notifier.two_factor_enabled(user)
        except Exception as exc:
            self.logger.error("two_factor_notice_failed", user_id=user.id, error=str(exc))

    async def verify_two_factor(self, user_id: str, code: str, is_backup_code: bool = False) -> None:
        await self.two_factor.verify(user_id, code, is_backup_code)

    async def disable_two_factor(self, user_id: str, password: str) -> None:
        await self.two_factor.disable(user_id, password)

    async def regenerate_backup_codes(self, user_id: str, password: str) -> List[str]:
        return await self.two_factor.regenerate_backup_codes(user_id, password)

    async def close(self) -> None:
        await self.wait_for_background_tasks()
        await self.resolver.close()
