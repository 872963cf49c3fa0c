from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cajauth.logging import get_logger

logger = get_logger(__name__)

DEV_JWT_SECRET = "dev-secret-key-change-in-production"
MIN_JWT_SECRET_LENGTH = 32
# Environments allowed to run on the built-in development secret
_RELAXED_ENVIRONMENTS = {"development", "test"}


class JwtAlgorithm(str, Enum):
    """HMAC algorithms accepted by the token codec."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings, built once at process start."""

    environment: str = env_field("development", "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/cajpro", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")

    jwt_secret: str = env_field(DEV_JWT_SECRET, "JWT_SECRET")
    jwt_algorithm: JwtAlgorithm = env_field(JwtAlgorithm.HS256, "JWT_ALGORITHM")
    jwt_issuer: str = env_field("cajpro", "JWT_ISSUER")
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        ge=0,
        description="Clock skew tolerated when checking token expiry",
    )
    access_token_ttl_seconds: int = env_field(3600, "JWT_EXPIRATION", gt=0)
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_EXPIRATION", gt=0
    )
    session_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60,
        "SESSION_TTL_SECONDS",
        gt=0,
        description="Lifetime of the durable session row created at login",
    )

    bcrypt_rounds: int = env_field(10, "BCRYPT_SALT_ROUNDS", ge=4, le=31)
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH", ge=1)

    access_cookie_name: str = env_field("cajpro_auth_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("cajpro_refresh_token", "REFRESH_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    bootstrap_admin: bool = env_field(
        True,
        "BOOTSTRAP_ADMIN",
        description="Create the default administrator at startup if missing",
    )
    default_admin_email: str = env_field("admin@cajpro.local", "DEFAULT_ADMIN_EMAIL")
    default_admin_password: str = env_field("admin123", "DEFAULT_ADMIN_PASSWORD")

    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    db_pool_timeout_seconds: float = env_field(5.0, "DB_POOL_TIMEOUT_SECONDS", gt=0)
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS", ge=0)

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://127.0.0.1:3000"], "CORS_ALLOW_ORIGINS"
    )

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

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _require_real_secret(self) -> "Settings":
        if self.environment in _RELAXED_ENVIRONMENTS:
            if self.jwt_secret == DEV_JWT_SECRET:
                logger.warning("jwt_secret_development_default", environment=self.environment)
            return self
        if not self.jwt_secret or self.jwt_secret == DEV_JWT_SECRET:
            raise ValueError(
                f"JWT_SECRET must be set when APP_ENV={self.environment!r}"
            )
        if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


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
