"""Configuration settings for buildmatrix.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

RUST_DIST_BASE = "https://static.rust-lang.org/dist"


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "buildmatrix"


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory."""
    return Path.home() / ".local" / "share" / "buildmatrix" / "artifacts"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "buildmatrix" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDMATRIX_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDMATRIX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    workspace_dir: Path = Field(
        default_factory=Path.cwd,
        description="Root of the Cargo workspace to build",
    )
    units_file: Path | None = Field(
        default=None,
        description="Optional YAML/JSON workspace description (per-unit overrides)",
    )
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Root directory for toolchain, cross toolchain and deps caches",
    )
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Root directory for build outputs and packages",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )
    advisory_db: Path | None = Field(
        default=None,
        description="Local RustSec advisory database for cargo audit",
    )

    # Toolchains
    rust_dist_url: str = Field(
        default=RUST_DIST_BASE,
        description="Base URL for Rust channel manifests and components",
    )
    host_triple: str = Field(
        default="x86_64-unknown-linux-gnu",
        description="Target triple of the build host",
    )
    msrv_version: str = Field(
        default="1.75",
        description="Release channel used for the msrv toolchain",
    )

    # Signing
    signing_cert: Path = Field(
        default=Path("/certs/cert.pem"),
        description="Certificate used to sign vendor packages",
    )
    signing_key: Path = Field(
        default=Path("/certs/key.pem"),
        description="Private key used to sign vendor packages",
    )
    signer_path: str = Field(
        default="jetez",
        description="Path to the vendor signing/packaging tool",
    )
    package_copyright: str = Field(
        default="Copyright 2023, Workonline Communications",
        description="Copyright line written into package manifests",
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - do not download toolchains or sources",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum matrix cells built in parallel",
    )
    build_jobs: int = Field(
        default=4,
        ge=1,
        description="Parallel jobs per cargo invocation and cross toolchain make",
    )
    fetch_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for fetching pinned external components",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for downloads",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single cargo invocation",
    )
    cross_build_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for each cross toolchain build stage",
    )


def get_settings() -> Settings:
    """Get the application settings.

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


__all__ = ["RUST_DIST_BASE", "Settings", "get_settings", "print_settings_json"]
