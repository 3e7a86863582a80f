from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authlab.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environment; only ``development`` relaxes cookie flags."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


DEFAULT_OAUTH_CLIENTS = {"mock-client-id": "mock-client-secret"}


class Settings(BaseModel):
    """Runtime settings for the authentication engine and its HTTP surface."""

    app_env: AppEnv = env_field(AppEnv.PRODUCTION, "APP_ENV")
    test_mode: bool = env_field(False, "TEST_MODE")
    # JWT settings
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("auth-learning-platform", "JWT_ISSUER")
    jwt_audience: str = env_field("auth-learning-platform", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(900, "ACCESS_TOKEN_TTL_SECONDS", ge=1)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", ge=1
    )
    # Session settings
    session_ttl_seconds: int = env_field(86400, "SESSION_TTL_SECONDS", ge=1)
    session_id_bytes: int = env_field(
        32,
        "SESSION_ID_BYTES",
        ge=16,
        description="Random bytes per session identifier (hex encoded)",
    )
    session_cookie_name: str = env_field("SessionID", "SESSION_COOKIE_NAME")
    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_kib: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_KIB", ge=64
    )
    # MFA settings
    mfa_issuer: str = env_field("Learn Authentication", "MFA_ISSUER")
    mfa_window: int = env_field(
        2,
        "MFA_WINDOW",
        ge=0,
        le=10,
        description="Time steps accepted either side of the current one",
    )
    mfa_time_step_seconds: int = env_field(30, "MFA_TIME_STEP_SECONDS", ge=1)
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT", ge=1, le=50)
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS", ge=1)
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key for encrypting TOTP secrets at rest; falls back to JWT_SECRET",
    )
    # OAuth emulator settings
    oauth_code_ttl_seconds: int = env_field(600, "OAUTH_CODE_TTL_SECONDS", ge=1)
    oauth_access_ttl_seconds: int = env_field(3600, "OAUTH_ACCESS_TTL_SECONDS", ge=1)
    oauth_clients: dict[str, str] = env_field(
        dict(DEFAULT_OAUTH_CLIENTS),
        "OAUTH_CLIENTS",
        description="JSON object mapping registered client ids to secrets",
    )
    # Rate limiting
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    mfa_rate_limit_per_minute: int = env_field(5, "MFA_RATE_LIMIT_PER_MINUTE", ge=1)
    backup_code_rate_limit_per_minute: int = env_field(
        5, "BACKUP_CODE_RATE_LIMIT_PER_MINUTE", ge=1
    )
    # Background maintenance
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", ge=1)
    seed_demo_users: bool = env_field(True, "SEED_DEMO_USERS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("oauth_clients", mode="before")
    @classmethod
    def _parse_oauth_clients(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return {}
            parsed = json.loads(value)
            if not isinstance(parsed, dict):
                raise ValueError("OAUTH_CLIENTS must be a JSON object")
            return parsed
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Ephemeral secret: tokens do not survive a restart
        logger.warning("jwt_secret_generated")
        return secrets.token_urlsafe(64)

    @property
    def secure_cookies(self) -> bool:
        return self.app_env != AppEnv.DEVELOPMENT

    @property
    def mfa_cipher_key(self) -> str:
        return self.mfa_encryption_key or self.jwt_secret or ""


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
