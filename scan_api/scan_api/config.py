"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_IP_HASH_SALT = "default-salt-change-in-production"
_DEFAULT_SESSION_SECRET = "gitscope-dev-session-secret-change-in-production"


class PlatformEnv(str, Enum):
    """Deployment environment label."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_HOST=0.0.0.0``) or through a ``.env`` file in the
    working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Environment label; staging and production refuse default secrets.
    platform_env: PlatformEnv = PlatformEnv.DEV

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:5173"]

    # Whether CORS responses include credentials (cookies, auth headers).
    cors_allow_credentials: bool = True

    # Identity.
    ip_hash_salt: SecretStr = SecretStr(_DEFAULT_IP_HASH_SALT)
    session_secret: SecretStr = SecretStr(_DEFAULT_SESSION_SECRET)
    session_cookie_name: str = "session"

    # Quota ledger.
    anonymous_quota_limit: int = 3
    authenticated_quota_limit: int = -1
    quota_window_hours: int = 24
    anonymous_retention_hours: int = 24
    retention_sweep_interval_seconds: float = 3600.0

    # Subscriptions.
    watch_poll_interval_seconds: float = 1.0

    # Rate limiting (abuse protection, independent of the daily quota).
    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 60
    rate_limit_burst_multiplier: float = 1.5
    rate_limit_scan_submissions_per_minute: int = 10

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    @field_validator("anonymous_quota_limit", "authenticated_quota_limit")
    @classmethod
    def _limit_is_finite_or_unlimited(cls, value: int) -> int:
        if value < -1:
            raise ValueError("quota limits must be >= 0, or -1 for unlimited")
        return value

    @field_validator("quota_window_hours", "anonymous_retention_hours")
    @classmethod
    def _positive_hours(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("quota windows must be positive")
        return value

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled.

        Browsers silently reject ``Access-Control-Allow-Origin: *`` when
        ``Access-Control-Allow-Credentials: true`` is present.  Fail fast at
        startup instead.
        """
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    def uses_default_secrets(self) -> bool:
        return (
            self.ip_hash_salt.get_secret_value() == _DEFAULT_IP_HASH_SALT
            or self.session_secret.get_secret_value() == _DEFAULT_SESSION_SECRET
        )


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
