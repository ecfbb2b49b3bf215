from __future__ import annotations

import ipaddress
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bureauguard.logging import get_logger

logger = get_logger(__name__)


class ReplayGuardBackend(str, Enum):
    """Where issued token identifiers are whitelisted."""

    DATABASE = "database"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login guard and token lifecycle."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bureauguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    replay_guard_backend: ReplayGuardBackend = env_field(
        ReplayGuardBackend.DATABASE,
        "REPLAY_GUARD_BACKEND",
        description="database follows USE_MEMORY_STORE; file and redis are standalone",
    )
    replay_guard_file: str = env_field(
        "/srv/bureauguard/jwt_jti.csv", "REPLAY_GUARD_FILE"
    )
    rate_limit_window_minutes: int = env_field(
        10,
        "RATE_LIMIT_WINDOW_MINUTES",
        description="Sliding window over which failed logins are counted",
    )
    rate_limit_block_minutes: int = env_field(10, "RATE_LIMIT_BLOCK_MINUTES")
    account_failure_threshold: int = env_field(10, "ACCOUNT_FAILURE_THRESHOLD")
    origin_failure_threshold: int = env_field(100, "ORIGIN_FAILURE_THRESHOLD")
    reveal_login_blocks: bool = env_field(
        False,
        "REVEAL_LOGIN_BLOCKS",
        description="Answer blocked logins with 429 instead of a generic credential error",
    )
    trust_proxy_headers: bool = env_field(False, "TRUST_PROXY_HEADERS")
    allowed_ip_ranges: list[str] = env_field(
        [],
        "ALLOWED_IP_RANGES",
        description="Comma separated CIDR ranges allowed to reach the API; empty allows all",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("bureauguard", "JWT_ISSUER")
    jwt_audience: str = env_field("bureauguard-api", "JWT_AUDIENCE")
    session_token_ttl_minutes: int = env_field(60, "SESSION_TOKEN_TTL_MINUTES")
    remember_me_token_ttl_minutes: int = env_field(
        20160, "REMEMBER_ME_TOKEN_TTL_MINUTES"
    )
    refresh_grace_minutes: int = env_field(
        10,
        "REFRESH_GRACE_MINUTES",
        description="How long past expiry a whitelisted token may still be refreshed",
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

    @field_validator("replay_guard_backend")
    @classmethod
    def _validate_replay_backend(cls, value: ReplayGuardBackend) -> ReplayGuardBackend:
        return ReplayGuardBackend(value)

    @field_validator(
        "rate_limit_window_minutes",
        "rate_limit_block_minutes",
        "account_failure_threshold",
        "origin_failure_threshold",
        "session_token_ttl_minutes",
        "remember_me_token_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("refresh_grace_minutes")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("allowed_ip_ranges", mode="before")
    @classmethod
    def _split_ip_ranges(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        ranges = [str(item).strip() for item in value if str(item).strip()]
        for cidr in ranges:
            ipaddress.ip_network(cidr, strict=False)
        return ranges

    @field_validator("redis_url", "jwt_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside test mode")
        # Tokens signed with an ephemeral secret die with the process
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated", test_mode=True)
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
