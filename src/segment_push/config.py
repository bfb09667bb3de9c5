"""Configuration management using Pydantic Settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SEGMENT_PUSH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Control plane
    controller_timeout_seconds: float = 60.0
    auth_token: str | None = None

    # Dispatch
    dispatch_max_workers: int = 8

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    celery_task_default_queue: str = "segment_push"

    # S3 defaults, overridden per scheme by the job spec
    s3_region: str = "us-east-1"
    s3_endpoint: str | None = None  # For MinIO or localstack
    s3_access_key: str | None = None
    s3_secret_key: str | None = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
