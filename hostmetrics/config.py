"""
Service settings, read from the environment or a local .env file.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the store backends, rollup calendar, cache and API."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Document store
    store_backend: str = Field(
        default="memory", description="Document store backend (memory|firestore)"
    )
    firestore_project: str = Field(default="", description="Google Cloud project ID")
    firestore_database: str = Field(default="(default)", description="Firestore database ID")
    firestore_credentials_path: str = Field(
        default="", description="Service account JSON path (empty uses ADC)"
    )
    firestore_watch_poll_seconds: float = Field(
        default=5.0, gt=0.0, description="How often live listeners are checked for a closed stream"
    )
    enforce_indexes: bool = Field(
        default=False,
        description="Emulate composite index requirements in the in-memory store",
    )

    # Retry policy for transient store errors
    retry_max_attempts: int = Field(default=3, ge=1, le=10, description="Max attempts")
    retry_base_delay_seconds: float = Field(
        default=0.5, ge=0.0, description="Initial backoff delay"
    )
    retry_max_delay_seconds: float = Field(default=8.0, ge=0.0, description="Backoff ceiling")

    # Fallback orchestration
    fallback_max_concurrency: int = Field(
        default=10, ge=1, le=100, description="Concurrent sub-collection fetches"
    )

    # Rollup calendar
    reporting_timezone: str = Field(
        default="UTC", description="IANA timezone used for day keys and windows"
    )
    week_start: int = Field(
        default=0, ge=0, le=6, description="First weekday of 'this week' (0=Monday)"
    )
    default_timeframe: str = Field(default="today", description="Timeframe on session start")
    top_n: int = Field(default=10, ge=1, le=100, description="Length of top-N lists")

    # Last-known-good snapshot cache
    snapshot_cache_enabled: bool = Field(default=True, description="Persist last good state")
    snapshot_cache_path: str = Field(
        default="./data/snapshots.duckdb", description="DuckDB file for cached snapshots"
    )

    # API
    api_host: str = Field(default="0.0.0.0", description="Bind address for the HTTP API")
    api_port: int = Field(default=8000, description="Port for the HTTP API")
    api_reload: bool = Field(default=False, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Dashboard origins allowed by CORS, comma-separated",
    )

    # Logging
    log_level: str = Field(default="info", description="Root log level")
    log_format: str = Field(default="json", description="json for log shipping, anything else for console")

    # Development
    dev_mode: bool = Field(default=True, description="Console logs instead of JSON")
    testing: bool = Field(default=False, description="Set by the test suite; disables colored logs")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        backend = v.strip().lower()
        if backend not in ("memory", "firestore"):
            raise ValueError("store_backend must be 'memory' or 'firestore'")
        return backend


@lru_cache
def get_settings() -> Settings:
    """Settings parsed once per process."""
    return Settings()
