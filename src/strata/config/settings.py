"""
Application settings using Pydantic.

Provides environment-based configuration loading with STRATA_ prefix.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STRATA_",
        extra="ignore",
    )

    # State
    state_path: Path = Path("strata.state.json")

    # Scheduling
    concurrency: int = Field(10, ge=1)

    # Provider call retry/backoff
    max_attempts: int = Field(5, ge=1)
    backoff_multiplier: float = Field(0.5, ge=0)
    backoff_max: float = Field(30.0, ge=0)
    call_timeout: float = Field(60.0, gt=0)

    # Provider
    provider: str = "memory"  # memory, http
    provider_url: str | None = None
    provider_token: str | None = None
    simulator_path: Path = Path("strata.cloud.json")  # memory provider only

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
