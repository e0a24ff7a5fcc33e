"""Library configuration loaded from environment variables."""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from ``BRIDGECAST_*`` environment variables (or .env file)."""

    # --- Shared cache ---
    cache_ttl_seconds: int = 15 * 60
    read_max_retries: int = 3
    read_retry_delay_seconds: float = 2.0

    # --- Storage locations ---
    locations_config: Path | None = None  # defaults to the bundled storage_locations.yaml

    # --- Chunked transfer ---
    chunk_size: int = 16384  # 16 KB
    max_message_size: int = 65536  # channel single-message limit
    inter_chunk_delay_seconds: float = 0.1

    # --- Sync orchestration ---
    transfer_timeout_seconds: float = 10.0
    sync_max_attempts: int = 3
    sync_base_delay_seconds: float = 1.0
    sync_backoff_multiplier: float = 2.0

    # --- Logging ---
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="BRIDGECAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)


@lru_cache
def get_settings() -> Settings:
    return Settings()
