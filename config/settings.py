"""
Configuration management for the commit history ingestion pipeline.
Uses Pydantic Settings for environment variable support and validation.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConflictPolicy(str, Enum):
    """What the store does when a known commit arrives with different content."""
    REJECT = "reject"
    OVERWRITE = "overwrite"


class TruncatedPolicy(str, Enum):
    """What the pipeline does when the history is shallow or partial."""
    WARN = "warn"
    ABORT = "abort"


class RepositorySettings(BaseSettings):
    """Source repository settings."""

    model_config = SettingsConfigDict(env_prefix="REPO_")

    path: Path = Field(
        default=Path("."),
        description="Path to the Git repository (work tree or bare)"
    )
    ref: str = Field(
        default="HEAD",
        description="Reference to walk history from"
    )

    @field_validator("path", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert string to Path if needed."""
        return Path(v) if isinstance(v, str) else v


class IngestionSettings(BaseSettings):
    """Settings for the ingestion pipeline."""

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    # Parallelism
    num_workers: int = Field(
        default=0,  # 0 means auto-detect (CPU count - 2)
        ge=0,
        description="Number of worker processes for diff summarization"
    )
    batch_size: int = Field(
        default=50,
        ge=1,
        description="Number of commits per batch for workers"
    )
    queue_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of batches queued across all workers"
    )

    # Diff policy
    rename_threshold: int = Field(
        default=50,
        ge=0,
        le=100,
        description="Similarity (percent) at or above which a delete/add pair is a rename"
    )
    detect_copies: bool = Field(
        default=False,
        description="Also pair copies with their source file"
    )
    summarize_timeout: Optional[float] = Field(
        default=60.0,
        gt=0,
        description="Seconds allowed per commit summary (None disables)"
    )

    # Resume support
    resume_from: Optional[str] = Field(
        default=None,
        description="Commit hash whose ancestry is already ingested"
    )
    incremental: bool = Field(
        default=True,
        description="Resume from the store's last completed run when resume_from is unset"
    )
    retry_skipped: bool = Field(
        default=True,
        description="Re-summarize commits skipped by earlier runs"
    )

    # Error policies
    conflict_policy: ConflictPolicy = Field(
        default=ConflictPolicy.REJECT,
        description="Write-conflict policy: reject or overwrite"
    )
    truncated_policy: TruncatedPolicy = Field(
        default=TruncatedPolicy.WARN,
        description="Shallow/partial history policy: warn or abort"
    )

    @property
    def effective_workers(self) -> int:
        """Return the effective number of workers."""
        if self.num_workers > 0:
            return self.num_workers
        cpu_count = os.cpu_count() or 4
        return max(1, cpu_count - 2)


class StoreSettings(BaseSettings):
    """SQLite output store settings."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: Path = Field(
        default=Path("./data/commits.db"),
        description="SQLite database file"
    )
    busy_timeout: float = Field(
        default=30.0,
        description="Seconds to wait on a locked database"
    )

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert string to Path if needed."""
        return Path(v) if isinstance(v, str) else v


class Settings(BaseSettings):
    """Main configuration container."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-configurations
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Log file path")

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        self.store.db_path.parent.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
