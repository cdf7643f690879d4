"""
Application configuration settings.

Central configuration module using Pydantic BaseSettings with environment variable support.
Loads from .env file and environment variables.
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if it exists (python-dotenv)
env_path = Path(".env")
if env_path.exists():
    load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App settings
    APP_NAME: str = "Cloud Inspection Core"
    APP_ENV: str = Field(default="local", env="APP_ENV")
    DEBUG: bool = Field(default=False, env="DEBUG")

    # Database settings
    DATABASE_URL: Optional[str] = Field(
        default=None,
        env="DATABASE_URL",
        description="Database connection URL for the SQL result store",
    )

    @property
    def sqlalchemy_database_uri(self) -> str:
        """
        Build SQLAlchemy database URI.

        DATABASE_URL wins when set; otherwise a local SQLite file is used.
        """
        if self.DATABASE_URL:
            url = self.DATABASE_URL
            # Heroku/Railway style URLs
            if url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql+psycopg2://", 1)
            return url
        return "sqlite:///./cloudaudit.db"

    # Result store backend
    RESULT_STORE_BACKEND: str = Field(
        default="sql",
        env="RESULT_STORE_BACKEND",
        description="Where inspection item results live: 'sql' or 'dynamodb'",
    )
    DYNAMODB_TABLE_NAME: str = Field(default="InspectionItemResults", env="DYNAMODB_TABLE_NAME")
    DYNAMODB_ENDPOINT_URL: Optional[str] = Field(default=None, env="DYNAMODB_ENDPOINT_URL")

    # AWS settings
    AWS_REGION: str = Field(default="us-east-1", env="AWS_REGION")
    AWS_EXTERNAL_ID: Optional[str] = Field(
        default=None,
        env="AWS_EXTERNAL_ID",
        description="External ID passed to sts:AssumeRole when customers require one",
    )
    ASSUME_ROLE_DURATION_SECONDS: int = Field(default=3600, env="ASSUME_ROLE_DURATION_SECONDS")

    # Inspection execution
    INSPECTION_TIMEOUT_SECONDS: int = Field(
        default=300,
        env="INSPECTION_TIMEOUT_SECONDS",
        description="Soft timeout per run, checked between checks",
    )
    CHECK_MAX_RETRIES: int = Field(default=3, env="CHECK_MAX_RETRIES")
    CHECK_RETRY_BASE_DELAY: float = Field(
        default=1.0,
        env="CHECK_RETRY_BASE_DELAY",
        description="Seconds; the wait before attempt n+1 is base * n",
    )
    MAX_CONCURRENT_RUNS: int = Field(default=8, env="MAX_CONCURRENT_RUNS")
    RUN_REGISTRY_MAX_ENTRIES: int = Field(default=1000, env="RUN_REGISTRY_MAX_ENTRIES")
    BATCH_CLEANUP_DELAY_SECONDS: float = Field(default=30.0, env="BATCH_CLEANUP_DELAY_SECONDS")

    # Consistency
    CONSISTENCY_TOLERANCE_SECONDS: int = Field(default=60, env="CONSISTENCY_TOLERANCE_SECONDS")
    RECONCILIATION_ENABLED: bool = Field(
        default=False,
        env="RECONCILIATION_ENABLED",
        description="Run a background consistency sweep over recent runs",
    )
    RECONCILIATION_INTERVAL_SECONDS: int = Field(default=3600, env="RECONCILIATION_INTERVAL_SECONDS")
    RECONCILIATION_AUTO_REPAIR: bool = Field(default=False, env="RECONCILIATION_AUTO_REPAIR")

    # Progress hub
    WS_STALE_AFTER_SECONDS: int = Field(
        default=180,
        env="WS_STALE_AFTER_SECONDS",
        description="Connections silent for longer than this are dropped by the sweep",
    )

    # CORS settings
    CORS_ORIGINS: Union[str, List[str]] = Field(
        default='["http://localhost:3000", "http://localhost:8000"]',
        env="CORS_ORIGINS",
    )

    @field_validator("CORS_ORIGINS")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from string or list."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not JSON, treat as comma-separated
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("RESULT_STORE_BACKEND")
    @classmethod
    def validate_backend(cls, v):
        """Only the two shipped stores are accepted."""
        backend = v.strip().lower()
        if backend not in ("sql", "dynamodb"):
            raise ValueError(f"RESULT_STORE_BACKEND must be 'sql' or 'dynamodb', got {v!r}")
        return backend

    # Logging
    LOG_LEVEL: str = Field(
        default="INFO",
        env="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
