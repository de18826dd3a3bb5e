import json
import re
from typing import Annotated, Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if str(v).strip()]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]

    return [p for p in re.split(r"[,\s]+", raw) if p]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    # Rate limiting master switch
    rate_limit_enabled: bool = True

    # Per route category limits (requests per window)
    rate_limit_api_limit: int = 100
    rate_limit_api_window_ms: int = 60 * 1000
    rate_limit_auth_limit: int = 10
    rate_limit_auth_window_ms: int = 15 * 60 * 1000
    rate_limit_webhook_limit: int = 200
    rate_limit_webhook_window_ms: int = 60 * 1000
    rate_limit_ai_limit: int = 20
    rate_limit_ai_window_ms: int = 60 * 1000
    rate_limit_oauth_limit: int = 30
    rate_limit_oauth_window_ms: int = 60 * 1000

    # In-memory store housekeeping
    rate_limit_sweep_interval_seconds: float = 60.0
    rate_limit_max_entry_age_ms: int = 60 * 60 * 1000  # 1 hour
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the counter store fails
    )

    # Redis settings (optional shared counter store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    @field_validator(
        "rate_limit_api_limit",
        "rate_limit_api_window_ms",
        "rate_limit_auth_limit",
        "rate_limit_auth_window_ms",
        "rate_limit_webhook_limit",
        "rate_limit_webhook_window_ms",
        "rate_limit_ai_limit",
        "rate_limit_ai_window_ms",
        "rate_limit_oauth_limit",
        "rate_limit_oauth_window_ms",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: float) -> float:
        """Validate sweep interval is positive."""
        if v <= 0:
            raise ValueError("rate_limit_sweep_interval_seconds must be positive")
        return v

    @model_validator(mode="after")
    def validate_max_entry_age(self) -> "Settings":
        """An entry must be able to live through the longest window."""
        longest = max(
            self.rate_limit_api_window_ms,
            self.rate_limit_auth_window_ms,
            self.rate_limit_webhook_window_ms,
            self.rate_limit_ai_window_ms,
            self.rate_limit_oauth_window_ms,
        )
        if self.rate_limit_max_entry_age_ms < longest:
            raise ValueError(
                f"rate_limit_max_entry_age_ms ({self.rate_limit_max_entry_age_ms}) "
                f"must be at least the longest window ({longest})"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
