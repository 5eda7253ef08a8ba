# patchkeeper/config.py
"""
Centralized configuration with validation.

Uses pydantic-settings to load and validate all environment variables at startup.
Fail fast with clear error messages if config is invalid.

Components never read these settings directly; the CLI builds each component
from an explicit Settings instance.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Store
    STORE_URL: str = Field(
        default=(
            "mssql+pyodbc://@.\\SQLEXPRESS/SUSDB"
            "?driver=ODBC+Driver+18+for+SQL+Server&trusted_connection=yes&TrustServerCertificate=yes"
        ),
        description="SQLAlchemy URL of the update metadata store",
    )
    DATABASE_NAME: str = Field(
        default="SUSDB",
        description="Database name used in backup statements and backup file names",
    )
    STORE_READY_ATTEMPTS: int = Field(
        default=3,
        description="Connection attempts before a run gives up on an unreachable store",
    )
    STORE_READY_INTERVAL_SECONDS: float = Field(
        default=5.0,
        description="Seconds between store connection attempts",
    )

    # Paths
    CONTENT_PATH: str = Field(
        default="C:\\WSUS",
        description="Root of the update content tree (contains WsusContent)",
    )
    BACKUP_DIR: str = Field(
        default="C:\\WSUS\\Backups",
        description="Directory receiving store backups",
    )
    EXPORT_ROOT: str | None = Field(
        default=None,
        description="Root of the Year/Month/Day export archive (optional)",
    )
    EXPORT_MODE: str = Field(
        default="full",
        description="Export content: full, differential (files at least EXPORT_DAYS old) or new-only",
    )
    EXPORT_DAYS: int = Field(
        default=30,
        description="Age window in days for differential and new-only exports (0 exports everything)",
    )
    RUN_MARKER_PATH: str | None = Field(
        default=None,
        description="Run-in-progress marker file. Defaults to <BACKUP_DIR>/.maintenance.lock",
    )

    # Retention policy
    DECLINE_AGE_MONTHS: int = Field(
        default=6,
        description="Updates released earlier than this many months ago are declined",
    )
    ALLOWED_CLASSIFICATIONS: str = Field(
        default="Critical Updates,Security Updates,Update Rollups,Service Packs,Definition Updates",
        description="Comma-separated classifications eligible for auto-approval",
    )
    AUTO_APPROVE_CAP: int = Field(
        default=100,
        description="Refuse auto-approval entirely when more candidates than this are found",
    )
    APPROVAL_TARGET_GROUP: str = Field(
        default="All Computers",
        description="Computer group receiving install approvals",
    )
    EXCLUDED_TITLE_MARKERS: str = Field(
        default="preview,beta",
        description="Comma-separated title markers that block auto-approval",
    )
    CATALOG_LIST_ATTEMPTS: int = Field(
        default=3,
        description="Attempts to list the catalog before reporting no data",
    )

    # Batched mutation
    MUTATION_BATCH_SIZE: int = Field(default=10000, description="Rows per batched delete statement")
    MUTATION_BATCH_DELAY_SECONDS: float = Field(default=1.0, description="Pause between delete batches")
    MUTATION_PROGRESS_EVERY: int = Field(default=50000, description="Log progress every N rows deleted")
    PURGE_GROUP_SIZE: int = Field(default=100, description="Updates per metadata purge progress group")

    # Index maintenance
    INDEX_FRAGMENTATION_FLOOR: float = Field(default=10.0, description="Skip indexes at or below this %")
    INDEX_REBUILD_THRESHOLD: float = Field(default=30.0, description="Rebuild above this %, else reorganize")
    INDEX_MIN_PAGE_COUNT: int = Field(default=1000, description="Skip indexes with this many pages or fewer")
    SHRINK_AFTER_CLEANUP: bool = Field(default=False, description="Shrink the store after index maintenance")
    SHRINK_TARGET_FREE_PERCENT: int = Field(default=10, description="Free space left in the store by a shrink")

    # Backup
    BACKUP_RETENTION_DAYS: int = Field(default=90, description="Delete backups older than this many days")

    # Copy utility
    COPY_TOOL: str = Field(default="auto", description="Copy utility: auto, robocopy, native")
    COPY_WORKERS: int = Field(default=16, description="Parallel copy workers")
    COPY_RETRIES: int = Field(default=2, description="Retries per file on copy failure")
    COPY_RETRY_WAIT_SECONDS: int = Field(default=5, description="Seconds between copy retries")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR")
    LOG_JSON: bool = Field(default=False, description="Emit single-line JSON log records")

    @field_validator("STORE_URL")
    @classmethod
    def fix_store_url(cls, v: str) -> str:
        """A bare mssql:// URL needs the pyodbc driver for SQLAlchemy."""
        if v.startswith("mssql://"):
            return v.replace("mssql://", "mssql+pyodbc://", 1)
        return v

    @field_validator(
        "MUTATION_BATCH_SIZE",
        "MUTATION_PROGRESS_EVERY",
        "PURGE_GROUP_SIZE",
        "AUTO_APPROVE_CAP",
        "BACKUP_RETENTION_DAYS",
        "COPY_WORKERS",
        "STORE_READY_ATTEMPTS",
        "CATALOG_LIST_ATTEMPTS",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("COPY_TOOL")
    @classmethod
    def known_copy_tool(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("auto", "robocopy", "native"):
            raise ValueError(f"Unknown copy tool: {v}. Available: auto, robocopy, native")
        return v

    @field_validator("EXPORT_MODE")
    @classmethod
    def known_export_mode(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("full", "differential", "new-only"):
            raise ValueError(f"Unknown export mode: {v}. Available: full, differential, new-only")
        return v

    @field_validator("EXPORT_DAYS")
    @classmethod
    def not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("SHRINK_TARGET_FREE_PERCENT")
    @classmethod
    def valid_percent(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("must be between 0 and 100")
        return v

    @model_validator(mode="after")
    def check_index_thresholds(self) -> "Settings":
        if self.INDEX_REBUILD_THRESHOLD < self.INDEX_FRAGMENTATION_FLOOR:
            raise ValueError("INDEX_REBUILD_THRESHOLD must not be below INDEX_FRAGMENTATION_FLOOR")
        return self

    @property
    def allowed_classifications(self) -> frozenset[str]:
        return frozenset(c.strip() for c in self.ALLOWED_CLASSIFICATIONS.split(",") if c.strip())

    @property
    def excluded_title_markers(self) -> tuple[str, ...]:
        return tuple(m.strip().lower() for m in self.EXCLUDED_TITLE_MARKERS.split(",") if m.strip())

    @property
    def run_marker_path(self) -> Path:
        if self.RUN_MARKER_PATH:
            return Path(self.RUN_MARKER_PATH)
        return Path(self.BACKUP_DIR) / ".maintenance.lock"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings. Call at startup to validate config."""
    return Settings()
