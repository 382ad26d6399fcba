from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from uniportal.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Account roles known to the portal."""

    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


# Path prefix -> role required to enter it
PROTECTED_PREFIXES: dict[str, str] = {
    "/admin": Role.ADMIN.value,
    "/instructor": Role.INSTRUCTOR.value,
    "/student": Role.STUDENT.value,
}

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal auth service."""

    app_env: str = env_field("production", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/uniportal", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_pool_timeout_seconds: float = env_field(
        10.0,
        "DB_POOL_TIMEOUT",
        description="Seconds to wait for a pooled connection before failing",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits runtime resets",
    )
    state_dir: str = env_field("/var/lib/uniportal", "STATE_DIR")
    session_secret: str | None = env_field(None, "SESSION_SECRET", validate_default=True)

    session_ttl_hours: int = env_field(8, "SESSION_TTL_HOURS")
    mfa_pending_ttl_minutes: int = env_field(15, "MFA_PENDING_TTL_MINUTES")
    mfa_otp_ttl_seconds: int = env_field(600, "MFA_OTP_TTL_SECONDS")
    session_cookie_name: str = env_field("um_session", "SESSION_COOKIE_NAME")
    mfa_cookie_name: str = env_field("um_mfa_pending", "MFA_COOKIE_NAME")
    cookie_secure: bool = env_field(
        False,
        "COOKIE_SECURE",
        description="Force the Secure cookie attribute even on plain HTTP",
    )
    login_path: str = env_field("/login", "LOGIN_PATH")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")

    smtp_host: str | None = env_field(None, "MAIL_SMTP_HOST")
    smtp_port: int = env_field(587, "MAIL_SMTP_PORT")
    smtp_user: str | None = env_field(None, "MAIL_SMTP_USER")
    smtp_password: str | None = env_field(None, "MAIL_SMTP_PASS")
    smtp_use_tls: bool = env_field(
        True, "MAIL_SMTP_USE_TLS", description="STARTTLS when true, implicit SSL when false"
    )
    email_from_address: str | None = env_field(None, "MAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sims", "MAIL_FROM_NAME")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() in {"development", "dev", "local"}

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [o.strip() for o in value.split(",") if o.strip()]
        return value

    @field_validator("mfa_otp_ttl_seconds")
    @classmethod
    def _otp_ttl_floor(cls, value: int) -> int:
        return max(60, value)

    @field_validator("session_secret")
    @classmethod
    def _ensure_session_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"SESSION_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_root = Path(info.data.get("state_dir") or "/var/lib/uniportal")
        secret_path = state_root / ".session_secret"

        try:
            state_root.mkdir(parents=True, exist_ok=True)
            os.chmod(state_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup",
                error=str(exc),
                path=str(state_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_root), prefix=".session_secret_", suffix=".tmp"
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
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make STATE_DIR writable"
            ) from exc
        logger.info("session_secret_generated", path=str(secret_path))
        return generated


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
