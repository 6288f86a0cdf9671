"""
Configuration settings for wani-offline.

Uses Pydantic Settings for environment variable management with .env file support.
Values are read once when a component is constructed; nothing re-reads them at runtime.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # WaniKani API
    # ========================================
    wanikani_api_token: str = Field(
        default="",
        description="WaniKani personal access token (https://www.wanikani.com/settings/personal_access_tokens)",
    )
    wanikani_api_url: str = Field(
        default="https://api.wanikani.com/v2",
        description="WaniKani API base URL",
    )
    wanikani_revision: str = Field(
        default="20170710",
        description="Value of the Wanikani-Revision header",
    )
    request_timeout_seconds: float = Field(
        default=15.0,
        description="Upper bound for any single remote call",
    )

    # ========================================
    # Local cache
    # ========================================
    data_path: Path = Field(
        default=Path.home() / ".wani",
        description="Directory holding the local cache database",
    )
    cache_db_name: str = Field(
        default="wani_cache.db",
        description="File name of the SQLite cache inside data_path",
    )

    # ========================================
    # Sync scheduling
    # ========================================
    sync_backoff_base_seconds: float = Field(
        default=2.0,
        description="First retry delay after a transient failure",
    )
    sync_backoff_cap_seconds: float = Field(
        default=300.0,
        description="Maximum retry delay between attempts of one flow",
    )
    sync_pull_interval_seconds: float = Field(
        default=600.0,
        description="Delay between successful catalog/progress pulls",
    )
    sync_push_interval_seconds: float = Field(
        default=30.0,
        description="Delay between successful outcome pushes",
    )
    sync_push_batch_size: int = Field(
        default=100,
        description="Outcomes read from the pending queue per push",
    )
    sync_min_poll_seconds: float = Field(
        default=1.0,
        description="Lower bound of the coordinator loop sleep",
    )
    sync_max_poll_seconds: float = Field(
        default=60.0,
        description="Upper bound of the coordinator loop sleep",
    )

    # ========================================
    # Sessions
    # ========================================
    session_batch_size: int = Field(
        default=50,
        description="Maximum number of items loaded into one session",
    )
    accessibility_mode: bool = Field(
        default=False,
        description="Plain output: no colour, no markup, spelled-out prompts",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Logging level for the console sink",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file (rotated at 10 MB)",
    )

    @property
    def database_path(self) -> Path:
        """Full path of the SQLite cache."""
        return self.data_path / self.cache_db_name


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
