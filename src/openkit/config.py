"""Configuration management for openkit."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from openkit.errors import ApiKeyNotConfiguredError, ConfigurationError
from openkit.retry import RetryPolicy

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_USER_AGENT = "openkit-python/0.1.0"


class DecodeFailurePolicy(StrEnum):
    """What a stream does with a frame whose payload does not parse."""

    FATAL = "fatal"
    SKIP = "skip"


class Settings(BaseSettings):
    """Client settings."""

    model_config = SettingsConfigDict(
        env_prefix="OPENKIT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Configuration
    api_key: str | None = Field(default=None, description="Bearer token for the API")
    organization: str | None = Field(default=None, description="Organization scope header")
    project: str | None = Field(default=None, description="Project scope header")
    base_url: str = Field(default=DEFAULT_BASE_URL, description="API base URL including the version prefix")
    timeout_seconds: float = Field(default=60.0, gt=0, description="Per-request timeout in seconds")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    model: str = Field(default="gpt-4o-mini", description="Default model for the CLI harness")

    # Retry Configuration
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    jitter_low: float = Field(default=0.8, gt=0)
    jitter_high: float = Field(default=1.2, gt=0)

    # Stream Configuration
    decode_failure_policy: DecodeFailurePolicy = Field(default=DecodeFailurePolicy.FATAL)

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_profile: Literal["default", "cli"] = Field(default="default", description="Log sink profile")

    @model_validator(mode="after")
    def _check_ranges(self) -> Settings:
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.jitter_high < self.jitter_low:
            raise ValueError("jitter_high must be >= jitter_low")
        return self

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.backoff_multiplier,
            jitter=(self.jitter_low, self.jitter_high),
        )

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ApiKeyNotConfiguredError("OPENKIT_API_KEY is not set")
        return self.api_key


def get_settings(**overrides: Any) -> Settings:
    """Get client settings.

    Args:
        **overrides: Explicit values that take precedence over the environment and ``.env``

    Returns:
        Settings instance
    """
    try:
        return Settings(**{key: value for key, value in overrides.items() if value is not None})
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
