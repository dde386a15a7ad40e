"""Configuration management for taskscope."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store Configuration
    sqlite_db_path: str = Field(default="taskscope.db", description="Path to the SQLite database file")
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment (controls queue concurrency)"
    )

    # Timezone Configuration
    default_timezone: str = Field(
        default="UTC", description="Timezone assigned to users who have not set one"
    )

    # Pydantic Logfire Configuration (optional)
    logfire_token: str | None = Field(default=None, description="Pydantic Logfire token for observability")

    # Resilient store client
    store_max_retries: int = Field(default=3, description="Attempts per store operation before giving up")
    store_base_delay_seconds: float = Field(default=0.3, description="Base delay for exponential backoff")
    store_operation_timeout_seconds: float = Field(default=6.0, description="Timeout for a single attempt")
    store_health_check_interval_seconds: float = Field(
        default=30.0, description="How long a successful health check is trusted"
    )

    @property
    def queue_concurrency(self) -> int:
        """Number of queued store operations allowed to run at once."""
        if self.environment == "production":
            return Constants.QUEUE_CONCURRENCY_PRODUCTION
        return Constants.QUEUE_CONCURRENCY_DEVELOPMENT


# Application Constants
class Constants:
    """Application-wide constants."""

    # Operation queue
    QUEUE_CONCURRENCY_DEVELOPMENT: int = 3
    QUEUE_CONCURRENCY_PRODUCTION: int = 2  # Shared pool in production
    QUEUE_BATCH_DELAY_SECONDS: float = 0.01

    # Timezone cache
    TIMEZONE_CACHE_TTL_SECONDS: int = 3600  # 1 hour

    # Filter pagination
    DEFAULT_FILTER_LIMIT: int = 50
    MAX_FILTER_LIMIT: int = 1000

    # Completed task visibility (days)
    DEFAULT_COMPLETED_WINDOW_DAYS: int = 7
    MAX_COMPLETED_WINDOW_DAYS: int = 365

    # Cache TTLs
    CACHE_TTL_FILTER_COUNTS_SECONDS: int = 30


def get_settings() -> Settings:
    """Get application settings (singleton pattern)."""
    return Settings()


# Global settings instance
settings = get_settings()
constants = Constants()
