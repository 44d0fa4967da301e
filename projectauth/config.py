from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from projectauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and token engine."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows an ephemeral JWT secret.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("projectauth", "JWT_ISSUER")
    jwt_audience: str = env_field("projectauth-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    verification_token_ttl_minutes: int = env_field(
        24 * 60, "VERIFICATION_TOKEN_TTL_MINUTES"
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    clock_skew_seconds: int = env_field(
        30,
        "CLOCK_SKEW_SECONDS",
        description="Leeway applied to access token expiry checks across nodes",
    )
    revoke_family_on_reuse: bool = env_field(
        True,
        "REVOKE_FAMILY_ON_REUSE",
        description="Revoke every refresh token of a rotation chain when a consumed token is replayed",
    )
    # Argon2id cost parameters; stored hashes carry their own parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")
    api_key_pepper: str | None = env_field(
        None,
        "API_KEY_PEPPER",
        description="HMAC key for API key digests; defaults to the JWT secret",
    )
    operation_timeout_seconds: float = env_field(10.0, "OPERATION_TIMEOUT_SECONDS")
    transient_retry_attempts: int = env_field(2, "TRANSIENT_RETRY_ATTEMPTS")
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "verification_token_ttl_minutes",
        "reset_token_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @field_validator("transient_retry_attempts")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        return max(0, value)

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Tokens signed with an ephemeral secret do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self

    @property
    def effective_api_key_pepper(self) -> str:
        return self.api_key_pepper or self.jwt_secret or ""


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
