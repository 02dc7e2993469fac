"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sandbox configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SAFESANDBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Trust domains
    host_origin: str = Field(
        default="http://localhost:3333",
        description="Origin of the host application (trusted side of the relay)",
    )
    sandbox_origin: str = Field(
        default="http://sandbox.localhost:3333",
        description="Origin of the isolated trust domain the mediator serves",
    )

    # Heartbeat
    heartbeat_interval_seconds: float = Field(
        default=2.0,
        gt=0.0,
        le=60.0,
        description="Interval between heartbeat pings",
    )
    heartbeat_threshold: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive missed pongs before the context is rebuilt",
    )

    # Mediator
    cache_name: str = Field(
        default="sandbox-cache-v15",
        description="Name of the cache bucket holding mediator-local assets",
    )
    upstream_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Timeout for forwarded requests",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
