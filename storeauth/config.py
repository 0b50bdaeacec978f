"""Centralized configuration for storeauth.

Uses Pydantic BaseSettings with environment variable loading and validation.
All SA_* environment variables are validated at import time.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Library settings loaded from environment variables."""

    model_config = {"env_prefix": "SA_", "case_sensitive": False, "extra": "ignore"}

    # Remote admin API
    api_base_url: str = Field(
        default="http://localhost:8000/api/v1", description="Admin API base URL"
    )
    api_token: str | None = Field(default=None, description="Bearer token for the admin API")
    request_timeout: float = Field(default=15.0, gt=0, description="Request timeout in seconds")
    retry_attempts: int = Field(
        default=3, ge=0, description="Retries for network errors and 5xx responses"
    )
    retry_delay: float = Field(
        default=1.0, ge=0, description="Base retry delay in seconds, doubled per attempt"
    )

    # Permission snapshot cache
    cache_dir: str = Field(default=".storeauth", description="Directory for the local cache")
    cache_ttl_minutes: int = Field(
        default=30, ge=1, description="Snapshot lifetime and refresh window in minutes"
    )

    # Bulk assignment
    assignment_concurrency: int = Field(
        default=1, ge=1, le=32, description="Assignment requests in flight during submit"
    )

    # Logging
    log_format: str = Field(default="text", description="Log format: text or json")
    log_level: str = Field(default="INFO", description="Python log level")

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            msg = f"SA_API_BASE_URL must be an http(s) URL, got '{v}'"
            raise ValueError(msg)
        return v.rstrip("/")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "json"):
            msg = f"SA_LOG_FORMAT must be 'text' or 'json', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        import logging

        v = v.upper()
        if not hasattr(logging, v):
            msg = f"SA_LOG_LEVEL must be a valid Python log level, got '{v}'"
            raise ValueError(msg)
        return v


# Singleton, validated at import time.
settings = Settings()
