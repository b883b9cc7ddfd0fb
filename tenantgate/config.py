from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tenantgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_persist: bool = env_field(
        True,
        "MEMORY_STORE_PERSIST",
        description="Write a JSON snapshot of the memory store under SHARED_FS_ROOT/state",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Permit runtime resets and in-process fallbacks for test runs",
    )
    secret_key: str = env_field(
        None,
        "SECRET_KEY",
        validate_default=True,
        description="HMAC key for one-time code hashes",
    )

    # Session lifetimes
    session_idle_minutes: int = env_field(8 * 60, "SESSION_IDLE_MINUTES")
    session_remember_me_minutes: int = env_field(
        14 * 24 * 60, "SESSION_REMEMBER_ME_MINUTES"
    )
    session_absolute_max_minutes: int = env_field(
        30 * 24 * 60, "SESSION_ABSOLUTE_MAX_MINUTES"
    )
    pending_session_minutes: int = env_field(
        15,
        "PENDING_SESSION_MINUTES",
        description="Lifetime of a session awaiting MFA; must outlive the code TTL",
    )
    max_sessions_per_user: int = env_field(10, "MAX_SESSIONS_PER_USER")
    session_purge_interval_seconds: int = env_field(
        900, "SESSION_PURGE_INTERVAL_SECONDS"
    )

    # Credential lockout tiers
    lockout_window_minutes: int = env_field(60, "LOCKOUT_WINDOW_MINUTES")
    lockout_first_attempts: int = env_field(5, "LOCKOUT_FIRST_ATTEMPTS")
    lockout_first_minutes: int = env_field(15, "LOCKOUT_FIRST_MINUTES")
    lockout_second_attempts: int = env_field(10, "LOCKOUT_SECOND_ATTEMPTS")
    lockout_second_minutes: int = env_field(60, "LOCKOUT_SECOND_MINUTES")
    lockout_long_attempts: int = env_field(20, "LOCKOUT_LONG_ATTEMPTS")
    lockout_long_minutes: int = env_field(24 * 60, "LOCKOUT_LONG_MINUTES")

    # MFA
    mfa_code_ttl_seconds: int = env_field(600, "MFA_CODE_TTL_SECONDS")
    mfa_code_max_attempts: int = env_field(5, "MFA_CODE_MAX_ATTEMPTS")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    expose_mfa_codes: bool = env_field(
        False,
        "EXPOSE_MFA_CODES",
        description="Test-only: echo the raw one-time code in send results",
    )
    device_trust_days: int = env_field(30, "DEVICE_TRUST_DAYS")

    # argon2id cost; defaults follow argon2-cffi
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_KIB")

    # Cookies
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    device_trust_cookie_name: str = env_field("device_trust", "DEVICE_TRUST_COOKIE_NAME")

    # Rate limits
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(20, "MFA_RATE_LIMIT_PER_MINUTE")

    # Email delivery of one-time codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TenantGate", "EMAIL_FROM_NAME")

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

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so outstanding code hashes survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tenantgate"))
        secret_path = fs_root / ".secret_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "secret_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("secret_key_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist SECRET_KEY; set SECRET_KEY env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _check_lifetimes(self) -> "Settings":
        if self.session_idle_minutes > self.session_absolute_max_minutes:
            raise ValueError("SESSION_IDLE_MINUTES cannot exceed SESSION_ABSOLUTE_MAX_MINUTES")
        if self.pending_session_minutes * 60 <= self.mfa_code_ttl_seconds:
            raise ValueError("PENDING_SESSION_MINUTES must outlive MFA_CODE_TTL_SECONDS")
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
