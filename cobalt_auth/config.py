from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from cobalt_auth.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class RateLimitScope(str, Enum):
    """How rate-limit counters are keyed for authentication endpoints.

    - ORIGIN: one counter per network origin (client address)
    - ORIGIN_ACCOUNT: one counter per origin and submitted account identifier,
      so a single user cannot lock out everyone behind a shared NAT
    """

    ORIGIN = "origin"
    ORIGIN_ACCOUNT = "origin_account"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/cobalt", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional JSON file the in-memory store persists to",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process cache fallback.",
    )

    # Token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("cobalt-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("cobalt-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime"
    )
    clock_skew_leeway_seconds: int = env_field(
        0,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Allowance for small clock skew when checking token expiry",
    )

    # Credential verifier (OWASP Argon2id baseline)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    argon2_memory_cost_kib: int = env_field(19456, "ARGON2_MEMORY_COST_KIB")
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    # Rate limits on authentication endpoints
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(900, "LOGIN_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(
        900, "REGISTER_RATE_WINDOW_SECONDS"
    )
    rate_limit_scope: RateLimitScope = env_field(
        RateLimitScope.ORIGIN, "RATE_LIMIT_SCOPE"
    )

    # Security policy
    escalate_on_refresh_reuse: bool = env_field(
        False,
        "ESCALATE_ON_REFRESH_REUSE",
        description="Revoke every session of a user when a rotated refresh token is replayed",
    )
    blacklist_fail_open: bool = env_field(
        False,
        "BLACKLIST_FAIL_OPEN",
        description="Accept access tokens when the blacklist cache is unreachable",
    )

    # Infrastructure bounds
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    store_retry_attempts: int = env_field(2, "STORE_RETRY_ATTEMPTS")
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS")
    postgres_ensure_schema: bool = env_field(
        False,
        "POSTGRES_ENSURE_SCHEMA",
        description="Create the user and refresh-token tables on startup if missing",
    )

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

    @field_validator("rate_limit_scope")
    @classmethod
    def _validate_scope(cls, value: RateLimitScope) -> RateLimitScope:
        return RateLimitScope(value)

    @field_validator("password_max_length")
    @classmethod
    def _validate_password_bounds(cls, value: int, info: ValidationInfo) -> int:
        minimum = info.data.get("password_min_length", 1)
        if value < minimum:
            raise ValueError("password_max_length must be >= password_min_length")
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _validate_positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        test_mode = bool(info.data.get("test_mode"))
        if value:
            if len(value) < _MIN_JWT_SECRET_LENGTH and not test_mode:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Tokens signed with a generated key do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; generated an ephemeral signing key",
        )
        return secrets.token_urlsafe(64)


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
