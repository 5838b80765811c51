"""Typed settings configuration - single source of truth."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync layer settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Remote store
    api_base_url: str = "http://localhost:4001/api"
    api_token: str = ""
    http_timeout_seconds: float = 10.0

    # Reconciliation (seconds)
    poll_interval_seconds: float = 3.0
    stale_time_seconds: float = 1.0
    refetch_on_mount: bool = True
    refetch_on_focus: bool = True

    # Read retries
    read_retry_count: int = 3
    retry_backoff_base_ms: int = 1000
    retry_backoff_max_ms: int = 30000

    # Input limits (~100MB of base64 data)
    max_image_length: int = 150_000_000

    # Session
    logout_on_auth_failure: bool = False
    recent_login_grace_seconds: float = 5.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
