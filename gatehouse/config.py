from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs: Any):
    """Declare a settings field that is sourced from ``env``."""

    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    environment: str = env_field("development", "APP_ENV")

    # Sessions and tokens
    session_ttl_seconds: int = env_field(3600, "SESSION_TTL")
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS")

    # Login throttling and password reset
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(900, "LOGIN_ATTEMPT_WINDOW")
    password_reset_ttl_seconds: int = env_field(900, "PASSWORD_RESET_TTL")

    # argon2id parameters; the cost factor maps to time_cost
    password_hash_cost: int = env_field(3, "PASSWORD_HASH_COST")
    password_hash_memory_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_KIB")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # General API traffic
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW")
    rate_limit_max: int = env_field(100, "RATE_LIMIT_MAX")
    register_rate_limit_window_seconds: int = env_field(
        900, "REGISTER_RATE_LIMIT_WINDOW"
    )
    register_rate_limit_max: int = env_field(5, "REGISTER_RATE_LIMIT_MAX")
    password_reset_rate_limit_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_LIMIT_WINDOW"
    )
    password_reset_rate_limit_max: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT_MAX")

    cache_default_ttl_seconds: int = env_field(3600, "CACHE_DEFAULT_TTL")

    # Fast store
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("gatehouse:", "REDIS_KEY_PREFIX")
    redis_command_timeout: float = env_field(2.0, "REDIS_COMMAND_TIMEOUT")
    redis_connect_timeout: float = env_field(5.0, "REDIS_CONNECT_TIMEOUT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")

    # Outbound mail for password reset links
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    public_base_url: str = env_field("http://localhost:8000", "PUBLIC_BASE_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Peers whose X-Forwarded-For / X-Real-IP headers are believed
    trusted_proxies: list[str] = env_field([], "TRUSTED_PROXIES")

    model_config = ConfigDict(extra="ignore")

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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "session_ttl_seconds",
        "max_login_attempts",
        "login_attempt_window_seconds",
        "password_reset_ttl_seconds",
        "password_hash_cost",
        "password_hash_parallelism",
        "rate_limit_window_seconds",
        "rate_limit_max",
        "register_rate_limit_window_seconds",
        "register_rate_limit_max",
        "password_reset_rate_limit_window_seconds",
        "password_reset_rate_limit_max",
        "cache_default_ttl_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("token_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("password_hash_memory_kib")
    @classmethod
    def _argon2_memory_floor(cls, value: int) -> int:
        # argon2 requires at least 8 KiB per lane; 4 lanes by default
        if value < 32:
            raise ValueError("argon2 memory cost must be at least 32 KiB")
        return value

    @field_validator("redis_key_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        if value and not value.endswith(":"):
            return f"{value}:"
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        environment = str(info.data.get("environment", "development")).lower()
        if environment in {"production", "prod"}:
            raise ValueError("JWT_SECRET must be set in production")
        # Tokens minted with a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", environment=environment)
        return secrets.token_urlsafe(48)


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
