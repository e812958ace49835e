from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pumpguard.logging import get_logger

logger = get_logger(__name__)

# Credentials issued by the identity provider live for 60 minutes
CREDENTIAL_LIFETIME_MINUTES = 60

DEFAULT_ADMIN_EMAIL_PATTERNS = [
    r"^admin@",
    r"@pumpguard\.com$",
    r"administrator@",
    r"superadmin@",
    r"root@",
    r"sysadmin@",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session lifecycle coordinator."""

    supabase_url: str = env_field("http://localhost:54321", "SUPABASE_URL")
    supabase_anon_key: str | None = env_field(None, "SUPABASE_ANON_KEY")
    profiles_table: str = env_field("profiles", "PROFILES_TABLE")
    http_timeout_seconds: float = env_field(30.0, "HTTP_TIMEOUT_SECONDS")
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_namespace: str = env_field("pumpguard", "REDIS_NAMESPACE")
    client_id: str | None = env_field(
        None,
        "CLIENT_ID",
        description="Scopes offline hints and the refresh ledger to one installation; "
        "a random id is used per runtime when unset",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for tests; allows runtime reset.",
    )

    login_path: str = env_field("/login", "LOGIN_PATH")
    password_reset_redirect_url: str = env_field(
        "https://app.pumpguard.com/auth/reset-password", "PASSWORD_RESET_REDIRECT_URL"
    )
    session_key: str = env_field("pumpguard-session-v2", "SESSION_KEY")
    session_version: str = env_field("2.0.0", "SESSION_VERSION")

    rate_limit_max_attempts: int = env_field(5, "RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_minutes: int = env_field(15, "RATE_LIMIT_WINDOW_MINUTES")

    retry_max_attempts: int = env_field(
        3, "RETRY_MAX_ATTEMPTS", description="Retries after a transient backend error"
    )
    retry_initial_delay_ms: int = env_field(500, "RETRY_INITIAL_DELAY_MS")

    token_refresh_interval_minutes: int = env_field(20, "TOKEN_REFRESH_INTERVAL_MINUTES")
    token_refresh_debounce_seconds: int = env_field(60, "TOKEN_REFRESH_DEBOUNCE_SECONDS")

    manual_logout_grace_seconds: float = env_field(1.0, "MANUAL_LOGOUT_GRACE_SECONDS")
    session_expired_redirect_delay_seconds: float = env_field(
        1.5, "SESSION_EXPIRED_REDIRECT_DELAY_SECONDS"
    )
    admin_reset_delay_seconds: float = env_field(
        1.0,
        "ADMIN_RESET_DELAY_SECONDS",
        description="Delay before answering an admin reset request, matching the normal flow",
    )
    admin_email_patterns: list[str] = env_field(
        list(DEFAULT_ADMIN_EMAIL_PATTERNS), "ADMIN_EMAIL_PATTERNS"
    )

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

    @field_validator("admin_email_patterns", mode="before")
    @classmethod
    def _split_patterns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("login_path")
    @classmethod
    def _ensure_absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            return "/" + value
        return value

    @field_validator("rate_limit_max_attempts", "rate_limit_window_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limit settings must be positive")
        return value

    @model_validator(mode="after")
    def _check_refresh_interval(self) -> "Settings":
        if not 0 < self.token_refresh_interval_minutes < CREDENTIAL_LIFETIME_MINUTES:
            raise ValueError(
                "TOKEN_REFRESH_INTERVAL_MINUTES must stay below the "
                f"{CREDENTIAL_LIFETIME_MINUTES}-minute credential lifetime"
            )
        if self.token_refresh_interval_minutes > 25:
            logger.warning(
                "token_refresh_interval_long",
                interval_minutes=self.token_refresh_interval_minutes,
                message="Refresh margin is thin; 20-25 minutes is recommended",
            )
        if self.retry_max_attempts < 0:
            raise ValueError("RETRY_MAX_ATTEMPTS must not be negative")
        return self

    @property
    def rate_limit_window_seconds(self) -> int:
        return self.rate_limit_window_minutes * 60

    @property
    def retry_initial_delay_seconds(self) -> float:
        return self.retry_initial_delay_ms / 1000.0

    @property
    def token_refresh_interval_seconds(self) -> int:
        return self.token_refresh_interval_minutes * 60


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
