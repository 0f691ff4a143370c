from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and login coordination core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sessionguard", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors.",
    )

    # Fast key-value store
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_connect_timeout: float = env_field(10.0, "REDIS_CONNECT_TIMEOUT")
    redis_command_timeout: float = env_field(5.0, "REDIS_COMMAND_TIMEOUT")

    # Sessions and tokens (seconds)
    session_timeout: int = env_field(
        300, "SESSION_TIMEOUT", description="Sliding TTL of a session record"
    )
    session_refresh_throttle: int = env_field(
        30,
        "SESSION_REFRESH_THROTTLE",
        description="Minimum spacing between two non-forced session refreshes",
    )
    access_token_ttl_seconds: int = env_field(300, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_expire: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_EXPIRE"
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    jwt_clock_skew_seconds: int = env_field(
        0, "JWT_CLOCK_SKEW_SECONDS", ge=0, description="Grace period after token expiry"
    )

    # Failed logins
    lockout_time: int = env_field(
        900, "LOCKOUT_TIME", description="Lockout window and failure-counter TTL"
    )
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")

    # Devices, reset tokens, profile cache
    max_devices: int = env_field(10, "MAX_DEVICES")
    reset_token_ttl: int = env_field(3600, "RESET_TOKEN_TTL")
    user_cache_ttl: int = env_field(900, "USER_CACHE_TTL")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SessionGuard", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

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

    @field_validator(
        "session_timeout",
        "session_refresh_throttle",
        "access_token_ttl_seconds",
        "refresh_token_expire",
        "lockout_time",
        "max_failed_attempts",
        "max_devices",
        "reset_token_ttl",
        "user_cache_ttl",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("redis_connect_timeout", "redis_command_timeout")
    @classmethod
    def _require_finite_timeout(cls, value: float) -> float:
        # a store outage must never hang a request indefinitely
        if value <= 0 or value > 60:
            raise ValueError("timeout must be between 0 and 60 seconds")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionguard"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def refresh_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret


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
