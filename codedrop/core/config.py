"""Application configuration for the relay and its clients."""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["*"])

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    # Relay session lifecycle.
    session_max_age_seconds: float = Field(default=300.0, gt=0)
    resolved_session_ttl_seconds: float = Field(default=3600.0, gt=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)

    # Client side.
    signaling_url: str = Field(default="http://localhost:3001")
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    poll_max_interval_seconds: float = Field(default=5.0, gt=0)
    poll_backoff_multiplier: float = Field(default=1.5, ge=1.0)
    offer_timeout_seconds: float = Field(default=60.0, gt=0)
    answer_timeout_seconds: float = Field(default=120.0, gt=0)
    connect_timeout_seconds: float = Field(default=30.0, gt=0)
    code_generation_attempts: int = Field(default=5, ge=1)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
