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

    # Database
    database_url: str = "sqlite+aiosqlite:///./jobs.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_busy_timeout_seconds: float = 5.0

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_auth_token: str | None = None

    # Worker Configuration
    worker_id: str | None = None
    worker_poll_interval_seconds: float = 2.0
    worker_max_retries: int = 5
    worker_progress_interval_seconds: float = 1.0
    worker_stale_lease_seconds: float = 3600.0

    # Outbound HTTP
    http_timeout_seconds: float = 60.0
    webhook_timeout_seconds: float = 10.0

    # Automatic1111 backend
    automatic1111_api_base: str | None = None

    # CivitAI downloads
    civitai_endpoint: str | None = None
    civitai_token: str | None = None
    models_dir: str = "models"
    loras_dir: str = "loras"

    # Auto-tagging
    autotag_endpoint: str = "https://booru.svc.cklio.com/evaluate"

    # Observability
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "renderqueue"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
