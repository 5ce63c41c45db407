"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "StudioStyle Batch Processor"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD

    # ==========================================================================
    # Scheduler Settings
    # ==========================================================================
    CONCURRENCY_LIMIT: int = 3
    JOB_TIMEOUT_SECONDS: Optional[float] = None  # None = a stuck job holds its slot

    # ==========================================================================
    # Provider Settings (Gemini image generation)
    # ==========================================================================
    GEMINI_API_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash-image"
    PROVIDER_TIMEOUT_SECONDS: float = 120.0

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    OUTPUT_DIR: str = "./data/output"

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = False  # JSON for pipelines, console for interactive use

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
