from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from boxoffice.config import Role

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "token_version_mismatch",
    "account_locked",
    "account_inactive",
    "invalid_token",
    "token_revoked",
    "token_expired",
    "token_malformed",
    "token_invalid_signature",
    "two_factor_required",
    "invalid_code",
    "invalid_backup_code",
    "invalid_password",
    "invalid_reset_token",
    "two_factor_already_enabled",
    "two_factor_not_enabled",
    "dependency_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 100:
        raise ValueError("password must be at most 100 characters")
    return value


def _validate_new_password(value: str) -> str:
    """Length rules plus at least one lowercase, one uppercase and one digit."""
    _validate_password_length(value)
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
    ):
        raise ValueError("password must contain uppercase, lowercase, and number")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    is_backup_code: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_login_password(cls, value: str) -> str:
        return _validate_password_length(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class UserResponse(BaseModel):
    id: str
    email: str
    role: Role
    is_active: bool
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_changed_password(cls, value: str) -> str:
        return _validate_new_password(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_reset_password(cls, value: str) -> str:
        return _validate_new_password(value)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    qr_code: str = Field(..., description="PNG QR code as a data: URL")


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)
    is_backup_code: bool = False


class TwoFactorPasswordRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=100)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class UserCreateRequest(BaseModel):
    email: str
    password: str
    role: Role = Role.ADMIN

    @field_validator("email")
    @classmethod
    def _validate_new_user_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_new_user_password(cls, value: str) -> str:
        return _validate_new_password(value)


class UserUpdateRequest(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class UserListResponse(BaseModel):
    users: List[UserResponse]
    pagination: Pagination
