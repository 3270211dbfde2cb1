"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage (memory store when unset)
    database_url: str | None = None
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Worker Pool
    worker_concurrency: int = 4
    worker_poll_interval_seconds: float = 1.0
    dispatcher_batch_size: int = 10
    worker_heartbeat_interval_seconds: float = 10.0

    # Sweeper
    sweeper_interval_seconds: float = 1.0
    completed_retention_seconds: float = 60.0
    failed_retention_seconds: float = 86400.0
    # ACTIVE jobs without a heartbeat for this long are treated as abandoned
    stale_job_timeout_seconds: float = 60.0

    # Monitor
    health_failure_window_seconds: float = 300.0

    # Job Defaults
    default_max_attempts: int = 3
    typed_backoff_delay_ms: int = 1000
    generic_backoff_delay_ms: int = 5000

    # Observability
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "job-queue-engine"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    metrics_port: int = 9100  # 0 disables the scrape endpoint


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
