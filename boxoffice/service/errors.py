from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on without parsing messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account, inactive account at lookup, or wrong password.

    The three causes are deliberately indistinguishable to callers.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenVersionMismatchError(InvalidCredentialsError):
    """Token was issued before the account's current token version."""
    error_code = "token_version_mismatch"

    def __init__(self, message: str = "Token is no longer valid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed attempts for this identifier (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, unlock_at: Optional[datetime], message: str = "Account temporarily locked") -> None:
        detail = {"unlock_at": unlock_at.isoformat()} if unlock_at else {}
        super().__init__(message, detail=detail)
        self.unlock_at = unlock_at


class AccountInactiveError(ServiceError):
    status_code = 403
    error_code = "account_inactive"

    def __init__(self, message: str = "Account is inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationError):
    """Presented bearer token cannot be accepted."""
    error_code = "invalid_token"


class TokenRevokedError(TokenError):
    error_code = "token_revoked"

    def __init__(self, message: str = "Token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(TokenError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenMalformedError(TokenError):
    error_code = "token_malformed"

    def __init__(self, message: str = "Malformed token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenSignatureError(TokenError):
    error_code = "token_invalid_signature"

    def __init__(self, message: str = "Invalid token signature", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorRequiredError(AuthenticationError):
    """Password accepted but a second factor must accompany the login."""
    error_code = "two_factor_required"

    def __init__(self, message: str = "Two-factor code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(AuthenticationError):
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidBackupCodeError(AuthenticationError):
    error_code = "invalid_backup_code"

    def __init__(self, message: str = "Invalid backup code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidPasswordError(AuthenticationError):
    """Password re-proof failed for a sensitive operation."""
    error_code = "invalid_password"

    def __init__(self, message: str = "Invalid password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidResetTokenError(ServiceError):
    status_code = 400
    error_code = "invalid_reset_token"

    def __init__(self, message: str = "Invalid or expired reset token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """State conflict (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyEnabledError(ConflictError):
    error_code = "two_factor_already_enabled"

    def __init__(self, message: str = "Two-factor authentication already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotEnabledError(ConflictError):
    error_code = "two_factor_not_enabled"

    def __init__(self, message: str = "Two-factor authentication not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class DependencyUnavailableError(ServiceError):
    """Directory, cache or revocation backend unreachable (503)."""
    status_code = 503
    error_code = "dependency_unavailable"

    def __init__(self, dependency: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"{dependency} unavailable", detail={"dependency": dependency}
        )
        self.dependency = dependency


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenVersionMismatchError",
    "AccountLockedError",
    "AccountInactiveError",
    "TokenError",
    "TokenRevokedError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenSignatureError",
    "TwoFactorRequiredError",
    "InvalidCodeError",
    "InvalidBackupCodeError",
    "InvalidPasswordError",
    "InvalidResetTokenError",
    "ConflictError",
    "AlreadyEnabledError",
    "NotEnabledError",
    "ForbiddenError",
    "NotFoundError",
    "DependencyUnavailableError",
]
