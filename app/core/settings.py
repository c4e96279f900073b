"""Configuration and environment settings for the Expense Sync service."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the Expense Sync service."""

    database_url: str = "sqlite:///sync.db"
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    log_file: str = "logs/sync.log"
    log_level: str = "INFO"

    # Background worker
    worker_enabled: bool = True
    worker_poll_interval_seconds: float = 5.0
    job_timeout_seconds: float = 300.0
    job_retention_days: int = 30
    cleanup_interval_seconds: float = 3600.0
    jobs_list_limit: int = 10

    # Retry policy
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0
    request_timeout_seconds: float = 30.0

    # Validation limits
    category_name_min_length: int = 1
    category_name_max_length: int = 100
    transaction_description_max_length: int = 500
    transaction_amount_min: float = 0.01
    transaction_amount_max: float = 999999999.99
    max_categories_per_sync: int = 1000
    max_transactions_per_sync: int = 10000
    max_payload_bytes: int = 50 * 1024 * 1024

    default_category_color: str = "#000000"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> "Settings":
    """Return the cached application settings."""
    return Settings()
