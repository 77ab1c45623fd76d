from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from boxoffice.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Back-office roles, lowest privilege first."""

    STAFF = "STAFF"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ROLE_RANK: dict[str, int] = {
    Role.STAFF.value: 1,
    Role.ADMIN.value: 2,
    Role.SUPER_ADMIN.value: 3,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(state_dir: str, filename: str) -> str:
    """Load a signing secret from ``state_dir`` or generate and persist one.

    Tokens must stay valid across restarts and across instances sharing the
    state directory, so a generated secret is written atomically with 0600
    permissions.
    """
    root = Path(state_dir)
    secret_path = root / filename
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set it via environment or make STATE_DIR writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth subsystem."""

    database_url: str = env_field("postgresql://localhost:5432/boxoffice", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/boxoffice", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; permits in-memory fallbacks.",
    )
    dependency_timeout_seconds: float = env_field(5.0, "DEPENDENCY_TIMEOUT_SECONDS")

    # Token codec
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("boxoffice", "JWT_ISSUER")
    jwt_audience: str = env_field("boxoffice-admin", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0)
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)

    # Password hashing (argon2id cost parameters)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_KIB", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Brute-force lockout
    lockout_threshold: int = env_field(10, "LOCKOUT_THRESHOLD", ge=1)
    lockout_window_seconds: int = env_field(3600, "LOCKOUT_WINDOW_SECONDS", gt=0)
    lockout_duration_seconds: int = env_field(3600, "LOCKOUT_DURATION_SECONDS", gt=0)

    # Two-factor
    totp_issuer: str = env_field("BoxOffice", "TOTP_ISSUER")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS", ge=1)
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS", gt=0)
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Impossible-travel detection
    anomaly_window_minutes: int = env_field(60, "ANOMALY_WINDOW_MINUTES", gt=0)
    anomaly_max_speed_kmh: float = env_field(1000.0, "ANOMALY_MAX_SPEED_KMH", gt=0)
    anomaly_max_events: int = env_field(5, "ANOMALY_MAX_EVENTS", ge=1)
    anomaly_min_distance_km: float = env_field(100.0, "ANOMALY_MIN_DISTANCE_KM", ge=0)
    login_event_retention_hours: int = env_field(24, "LOGIN_EVENT_RETENTION_HOURS", gt=0)
    geolocation_enabled: bool = env_field(True, "GEOLOCATION_ENABLED")
    geolocation_cache_seconds: int = env_field(86400, "GEOLOCATION_CACHE_SECONDS", gt=0)

    # Password reset
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Email delivery for reset links and security alerts
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("BoxOffice", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.jwt_access_secret:
            self.jwt_access_secret = _persisted_secret(self.state_dir, ".jwt_access_secret")
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _persisted_secret(self.state_dir, ".jwt_refresh_secret")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
