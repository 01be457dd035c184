"""Application configuration using Pydantic Settings."""

from functools import lru_cache
import json
import shlex
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Chapter Download Orchestrator API"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/chapters.db",
        description="Async SQLAlchemy connection URL",
    )
    database_echo: bool = False

    # Paths
    data_dir: Path = Field(default=Path("./data"), description="Base data directory")
    library_dir: Path = Field(default=Path("./data/library"), description="Default library root for downloads")
    follow_file_name: str = Field(default="follow.txt", description="Follow list file name inside a library")

    # Downloader
    downloader_command: str = Field(
        default="gallery-dl",
        description="External download tool invocation (shell-style, may include extra args)",
    )
    download_language: str = Field(default="en", description="Default translated language")
    chapter_timeout_seconds: int = Field(
        default=0,
        ge=0,
        description="Per-chapter safety timeout for the download tool (0 disables)",
    )
    stderr_max_chars: int = Field(default=2000, ge=100, description="Max stderr kept on a failed job")
    downloader_config_path: Path | None = Field(
        default=None,
        description="gallery-dl config file to pass instead of the generated one (must zip chapters to .cbz)",
    )

    # Execution
    scheduler_tick_seconds: float = Field(default=30.0, gt=0, description="Queue polling interval")
    retry_check_seconds: float = Field(default=300.0, gt=0, description="Auto-retry sweep interval")
    retry_base_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Backoff unit: a failed job waits (retry_count + 1) * base before retry",
    )
    default_max_retries: int = Field(default=3, ge=0, le=20)
    default_priority: int = Field(default=5, ge=1, le=10)

    # Remote API
    mangadex_api_url: str = Field(default="https://api.mangadex.org")
    api_timeout_seconds: float = Field(default=30.0, gt=0)
    rate_limit_per_second: int = Field(default=5, ge=1)
    rate_limit_per_minute: int = Field(default=40, ge=1)

    # Chapter checks / follow list
    chapter_check_concurrency: int = Field(default=5, ge=1, le=20, description="Titles checked in parallel")
    follow_enabled: bool = Field(default=True, description="Run the periodic chapter check")
    follow_cron: str = Field(default="0 */6 * * *", description="Crontab expression for chapter checks")

    # WebSocket
    ws_log_buffer_ms: int = Field(default=100, description="WebSocket log buffer interval in ms")

    # CORS
    # NOTE: Keep this as a string so pydantic-settings doesn't attempt JSON parsing
    # before our validators run (which breaks on comma-separated values).
    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description='Allowed CORS origins (comma-separated or JSON array, e.g. \'["https://a","https://b"]\')',
    )

    @computed_field
    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if raw == "":
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(it).strip() for it in parsed if str(it).strip()]
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @computed_field
    @property
    def downloader_argv(self) -> list[str]:
        """Downloader command split into argv form."""
        return shlex.split(self.downloader_command)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for directory in [self.data_dir, self.library_dir]:
            directory.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
