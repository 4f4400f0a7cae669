from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from venuehub.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the venue portal auth service."""

    app_name: str = env_field("VenueHub", "APP_NAME")
    shared_fs_root: str = env_field("/srv/venuehub", "SHARED_FS_ROOT")
    # Sessions
    session_ttl_minutes: int = env_field(60 * 24, "SESSION_TTL_MINUTES", ge=1)
    pending_2fa_ttl_seconds: int = env_field(
        300,
        "PENDING_2FA_TTL_SECONDS",
        ge=1,
        description="How long a password-verified login waits for its 2FA code",
    )
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    # TOTP
    totp_issuer: str | None = env_field(
        None, "TOTP_ISSUER", description="Issuer label shown in authenticator apps; defaults to app_name"
    )
    totp_valid_window: int = env_field(
        1, "TOTP_VALID_WINDOW", ge=0, le=5, description="Accepted 30s steps either side for login/enable"
    )
    totp_disable_window: int = env_field(
        2, "TOTP_DISABLE_WINDOW", ge=0, le=5, description="Accepted 30s steps either side for disable"
    )
    totp_secret_length: int = env_field(32, "TOTP_SECRET_LENGTH", ge=32)
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; generated under SHARED_FS_ROOT if unset",
    )
    # Failed-code throttling
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", ge=1)
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS", ge=1)
    mfa_attempt_window_seconds: int = env_field(300, "MFA_ATTEMPT_WINDOW_SECONDS", ge=1)
    # Accounts
    min_password_length: int = env_field(4, "MIN_PASSWORD_LENGTH", ge=1)
    seed_default_accounts: bool = env_field(
        False,
        "SEED_DEFAULT_ACCOUNTS",
        description="Create admin/admin and user/user on startup when missing",
    )
    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    host: str = env_field("0.0.0.0", "API_HOST")
    port: int = env_field(8000, "API_PORT")

    model_config = ConfigDict(extra="ignore")

    @property
    def issuer(self) -> str:
        return self.totp_issuer or self.app_name

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("totp_disable_window")
    @classmethod
    def _check_disable_window(cls, value: int, info) -> int:
        valid_window = info.data.get("totp_valid_window", 1)
        if value < valid_window:
            logger.warning(
                "totp_disable_window_narrower_than_login",
                disable_window=value,
                valid_window=valid_window,
            )
        return value


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
