"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. This ensures:
1. Type validation at startup
2. Centralized configuration
3. Documentation of available settings
4. Proper defaults

Per-restaurant provider credentials are NOT process settings. They live on
the restaurant record and are loaded into a ProviderConfig for each operation
(see app.services.restaurant_config).
"""

from functools import lru_cache
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path for Docker, override via env for local dev
    database_url: str = "sqlite:///./dispatch.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    sqlite_busy_timeout_ms: int = 5000

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    app_name: str = "Delivery Dispatch Orchestrator"
    app_version: str = "1.0.0"

    # API
    api_v1_prefix: str = "/api/v1"

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:3001"

    # ==========================================================================
    # Background scheduler
    # ==========================================================================
    scheduler_enabled: bool = True
    poll_interval_seconds: int = 30  # courier status polling cadence
    task_interval_seconds: int = 60  # due task sweep cadence
    scheduler_startup_delay_seconds: int = 10
    max_concurrent_provider_calls: int = 8

    # ==========================================================================
    # Outbound provider calls
    # ==========================================================================
    provider_timeout_seconds: float = 15.0
    retry_base_delay_seconds: int = 30
    retry_max_delay_seconds: int = 900  # 15 minutes
    retry_max_attempts: int = 5
    retry_jitter_ratio: float = 0.5
    status_refresh_delay_seconds: int = 60

    doordash_api_base_url: str = "https://openapi.doordash.com"
    doordash_sandbox_api_base_url: str = "https://openapi.doordash.com"
    gloria_food_api_base_url: str = "https://pos.globalfoodsoft.com"

    @field_validator("retry_jitter_ratio")
    @classmethod
    def validate_jitter_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("retry_jitter_ratio must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_retry_settings(self) -> "Settings":
        """Reject retry bounds that would make backoff unbounded or empty."""
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")
        if self.retry_base_delay_seconds <= 0:
            raise ValueError("retry_base_delay_seconds must be positive")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_base_delay_seconds"
            )
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be positive")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
