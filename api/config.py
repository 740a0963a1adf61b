"""
Hosting configuration for the TILEGUARD API.

Retry and notification tuning for the engine itself lives in
src.config.RecoveryConfig; these settings only cover the web service that
hosts one engine instance (bind address, CORS, health sampling, and how
many recovered tiles and notifications are kept for clients).
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


class Settings(BaseSettings):
    """Hosting settings, read from the environment or a .env file."""

    # ========================================================================
    # Server
    # ========================================================================
    api_host: str = "0.0.0.0"
    api_port: int = Field(8000, ge=1, le=65535)
    environment: str = "development"
    log_level: str = "info"

    # Map front-ends allowed to report failures and fetch recovered tiles
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ========================================================================
    # Tile recovery hosting
    # ========================================================================
    # Seconds between health samples; 0 disables the monitor
    health_monitor_interval: float = Field(30.0, ge=0)
    recovered_tile_cache_size: int = Field(500, ge=1)
    recovered_tile_ttl: Optional[int] = Field(900, ge=1)
    notification_history_size: int = Field(100, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        value = value.lower()
        if value not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")
        return value

    @model_validator(mode="after")
    def _no_localhost_in_production(self) -> "Settings":
        if self.is_production and "localhost" in self.cors_origins.lower():
            raise ValueError("CORS_ORIGINS must not include localhost in production")
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Settings built once per process."""
    return Settings()


settings = get_settings()
