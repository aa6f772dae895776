from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cocoauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings, injected into services at construction."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep sessions and email codes in process memory instead of Redis",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    user_store_path: str | None = env_field(
        None,
        "USER_STORE_PATH",
        description="JSON file backing the in-memory user store; unset keeps users in memory only",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    access_token_ttl_seconds: int = env_field(
        30 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Access token lifetime in seconds",
    )
    refresh_token_ttl_seconds: int = env_field(
        14 * 24 * 60 * 60,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="Refresh token lifetime in seconds; also the session record TTL",
    )
    email_code_ttl_seconds: int = env_field(
        5 * 60,
        "EMAIL_CODE_TTL_SECONDS",
        description="Lifetime of an email verification code in seconds",
    )

    # Downstream push/chat services sit behind one gateway
    gateway_base_url: str = env_field("http://localhost:8000", "GATEWAY_BASE_URL")
    coordination_timeout_seconds: float = env_field(
        5.0,
        "COORDINATION_TIMEOUT_SECONDS",
        description="Timeout for each push/chat coordination call",
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("CocoTalk", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore", frozen=True)

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
        "access_token_ttl_seconds", "refresh_token_ttl_seconds", "email_code_ttl_seconds"
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("gateway_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_secret_and_ttls(self) -> "Settings":
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("refresh token TTL must be longer than access token TTL")
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_SECRET must be set; every instance has to sign with the same key"
                )
            # Frozen model: bypass the setattr guard for the generated test key
            object.__setattr__(self, "jwt_secret", secrets.token_urlsafe(48))
            logger.warning("jwt_secret_generated", reason="test_mode_without_secret")
        elif len(self.jwt_secret) < 32:
            logger.warning("jwt_secret_short", length=len(self.jwt_secret))
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
