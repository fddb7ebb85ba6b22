"""Environment-based configuration for DetectX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DETECTX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DETECTX_",
        case_sensitive=False,
    )

    # AWS
    aws_region: str = "us-east-1"
    aws_endpoint_url: str | None = None

    # Storage and result table
    bucket_name: str | None = None
    results_table_name: str | None = None
    result_store: Literal["dynamodb", "memory"] = "dynamodb"

    # Authentication (None = disabled)
    api_key: str | None = None

    # Classification policy
    target_label: str = "Cat"
    max_labels: int = Field(default=10, ge=1, le=1000)

    # Per-attempt timeouts (seconds)
    metadata_timeout: float = Field(default=5.0, gt=0)
    store_timeout: float = Field(default=5.0, gt=0)
    classify_timeout: float = Field(default=30.0, gt=0)

    # Upload URLs
    upload_url_expires: int = Field(default=3600, ge=1, le=604_800)

    # Queue worker
    queue_url: str | None = None
    queue_wait_seconds: int = Field(default=20, ge=0, le=20)
    queue_batch_size: int = Field(default=10, ge=1, le=10)

    # Concurrency
    max_concurrent: int = Field(default=4, ge=1)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
