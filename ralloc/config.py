"""Configuration management for the allocation service."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RALLOC_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Server settings
    host: str = "127.0.0.1"
    port: int = 3340
    debug: bool = False

    # Ledger store
    database_url: str = "sqlite+aiosqlite:///./ralloc.db"

    # Capacity index
    bucket_hours: int = 24
    default_base_capacity: int = 100

    # Resource catalog
    catalog_url: str | None = None
    catalog_file: str | None = None
    catalog_staleness_seconds: int = 300
    catalog_timeout_seconds: float = 5.0
    # Periodic full reload of the catalog snapshot, 0 disables it
    catalog_refresh_seconds: int = 0

    # Lifecycle events
    event_webhook_url: str | None = None
    event_max_attempts: int = 5
    event_retry_base_seconds: float = 0.5

    # Time-driven activate/complete sweep, 0 disables it
    auto_advance_seconds: int = 0

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
