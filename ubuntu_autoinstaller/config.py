"""Configuration settings for ubuntu_autoinstaller.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    """Return the default data directory."""
    return Path.home() / ".local" / "share" / "ubuntu-autoinstaller"


def _default_work_dir() -> Path:
    """Return the default root for per-build working trees."""
    return Path.home() / ".cache" / "ubuntu-autoinstaller" / "builds"


def _default_source_cache_dir() -> Path:
    """Return the default cache directory for downloaded source ISOs."""
    return Path.home() / ".cache" / "ubuntu-autoinstaller" / "sources"


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory."""
    return _default_data_dir() / "artifacts"


def _default_uploads_dir() -> Path:
    """Return the default directory for uploaded source images."""
    return _default_data_dir() / "uploads"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_data_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the UAI_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="UAI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_parse_none_str="none",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for per-build working trees",
    )
    source_cache_dir: Path = Field(
        default_factory=_default_source_cache_dir,
        description="Cache directory for downloaded Ubuntu ISOs",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for produced ISO artifacts",
    )
    uploads_dir: Path = Field(
        default_factory=_default_uploads_dir,
        description="Directory for uploaded source ISOs",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for the artifact catalog",
    )
    keep_work_dirs: bool = Field(
        default=False,
        description="Keep per-build working trees after a build finishes",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Upstream sources
    ubuntu_mirror: str = Field(
        default="https://releases.ubuntu.com",
        description="Base URL for Ubuntu release images",
    )
    keyserver: str = Field(
        default="hkp://keyserver.ubuntu.com",
        description="Keyserver used to fetch the Ubuntu signing key",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Maximum builds running at the same time",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=3600,
        ge=60,
        description="Wall-clock deadline for a whole build (none: no deadline)",
    )
    command_timeout: int = Field(
        default=1800,
        ge=10,
        description="Timeout for a single external command",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for ISO downloads",
    )
    kill_grace_seconds: float = Field(
        default=10.0,
        ge=0,
        description="Delay between SIGTERM and SIGKILL for cancelled commands",
    )

    # Retention
    retention_hours: float = Field(
        default=24.0,
        gt=0,
        description="How long finished builds and artifacts are kept",
    )
    sweep_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between watchdog and retention sweeps",
    )

    # Uploads
    max_upload_bytes: int = Field(
        default=10 * 1024**3,
        ge=1,
        description="Maximum size of an uploaded source ISO",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
