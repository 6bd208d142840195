"""Shared configuration management for the reconciliation engine.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_AMOUNT_TOLERANCE=1.5
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-reconciliation-engine",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Validation tolerances
    amount_tolerance: float = Field(
        default=2.0,
        ge=0,
        description="Allowed rounding difference (NPR) for total and VAT checks",
    )
    vat_rate_tolerance: float = Field(
        default=1.0,
        ge=0,
        description="Percentage points within which an implied VAT rate counts as 13%",
    )
    vat_inconsistent_blocks_approval: bool = Field(
        default=False,
        description="Treat VAT inconsistency as a blocking flag in the approval gate",
    )

    # Calendar heuristics
    bs_detection_threshold: int = Field(
        default=2050,
        description="Years above this are always read as Bikram Sambat",
    )
    plausible_bs_year_min: int = Field(
        default=2070,
        description="Earliest BS year accepted without an advisory note",
    )
    plausible_bs_year_max: int = Field(
        default=2095,
        description="Latest BS year accepted without an advisory note",
    )

    # Persistence
    database_url: str = Field(
        default="sqlite:///:memory:",
        description="SQLAlchemy database URL (use env var APP_DATABASE_URL)",
    )
    database_echo: bool = Field(
        default=False,
        description="Log emitted SQL statements",
    )

    # Queue configuration (arq / Redis)
    queue_enabled: bool = Field(
        default=False,
        description="Enable background reconciliation jobs",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the job queue",
    )
    queue_max_jobs: int = Field(
        default=10,
        description="Maximum concurrent jobs per worker",
    )
    queue_job_timeout: int = Field(
        default=300,
        description="Job timeout in seconds",
    )
    merge_conflict_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts a queued job makes when a merge-key race is detected",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
