"""Application settings and configuration.

This module defines all configuration options for the Ladder Inspection
guard layer. Settings are loaded from environment variables with sensible
defaults and injected into each guard at construction time.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_CSRF_TOKEN_LIFETIME = 300


class GuardSettings(BaseSettings):
    """Guard settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    Tests construct their own instance instead of mutating the module global.
    """

    # Application metadata
    app_name: str = Field(default="Ladder Inspection Guard", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # Login lockout
    max_login_attempts: int = Field(default=5, ge=1, alias="MAX_LOGIN_ATTEMPTS")
    lockout_duration: int = Field(default=900, ge=1, alias="LOCKOUT_DURATION")

    # Session lifecycle
    session_timeout: int = Field(default=3600, ge=1, alias="SESSION_TIMEOUT")
    session_rotation_interval: int = Field(
        default=1800,
        ge=1,
        alias="SESSION_ROTATION_INTERVAL",
    )
    session_cookie_name: str = Field(default="ladder_session", alias="SESSION_COOKIE_NAME")
    session_cookie_secure: bool = Field(default=True, alias="SESSION_COOKIE_SECURE")

    # CSRF protection
    csrf_token_lifetime: int = Field(default=3600, alias="CSRF_TOKEN_LIFETIME")
    csrf_check_ip: bool = Field(default=False, alias="CSRF_CHECK_IP")
    csrf_check_user_agent: bool = Field(default=True, alias="CSRF_CHECK_USER_AGENT")
    csrf_token_name: str = Field(default="csrf_token", alias="CSRF_TOKEN_NAME")

    # Key-value store backend
    store_backend: str = Field(default="memory", alias="STORE_BACKEND")
    cache_root: str = Field(default="./cache/rate_limits", alias="CACHE_ROOT")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    database_url: str = Field(default="sqlite:///./ladder_guard.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    cas_max_retries: int = Field(default=16, ge=1, alias="CAS_MAX_RETRIES")

    # Rate limiting fallbacks
    rate_limit_default_requests: int = Field(
        default=10,
        ge=1,
        alias="RATE_LIMIT_DEFAULT_REQUESTS",
    )
    rate_limit_default_window: int = Field(
        default=3600,
        ge=1,
        alias="RATE_LIMIT_DEFAULT_WINDOW",
    )
    api_rate_limit_requests: int = Field(default=100, ge=1, alias="API_RATE_LIMIT_REQUESTS")
    api_rate_limit_window: int = Field(default=3600, ge=1, alias="API_RATE_LIMIT_WINDOW")
    api_rate_limit_enabled: bool = Field(default=True, alias="API_RATE_LIMIT_ENABLED")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("csrf_token_lifetime")
    @classmethod
    def _clamp_token_lifetime(cls, value: int) -> int:
        return max(MIN_CSRF_TOKEN_LIFETIME, int(value))

    @field_validator("store_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        backend = value.lower()
        if backend not in {"memory", "file", "redis", "sql"}:
            raise ValueError(f"Unknown store backend: {value}")
        return backend

    @property
    def public_config(self) -> dict[str, object]:
        """Return the non-secret guard policy for transparency endpoints."""
        return {
            "max_login_attempts": self.max_login_attempts,
            "lockout_duration": self.lockout_duration,
            "session_timeout": self.session_timeout,
            "session_rotation_interval": self.session_rotation_interval,
            "csrf_token_lifetime": self.csrf_token_lifetime,
            "csrf_check_ip": self.csrf_check_ip,
            "csrf_check_user_agent": self.csrf_check_user_agent,
            "csrf_token_name": self.csrf_token_name,
        }


settings = GuardSettings()
