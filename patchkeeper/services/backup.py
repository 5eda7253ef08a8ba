# patchkeeper/services/backup.py
"""
Backup & retention manager.

Backups are written as <database>_<YYYYMMDD>.bak, with _1, _2, ... appended
when a backup for the same day already exists. Retention deletes backups
older than max_age_days by modification time, but always keeps the newest
file, and is never applied after a failed backup.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

from patchkeeper.constants import BackupDefaults
from patchkeeper.errors import BackupError, StoreConnectivityError, StoreError
from patchkeeper.services.results import PhaseResult
from patchkeeper.store import StoreClient

logger = logging.getLogger(__name__)


def format_size(size_bytes: int | None) -> str:
    """Human-readable size: GB, MB or KB, or "Unknown"."""
    if size_bytes is None or size_bytes < 0:
        return "Unknown"
    if size_bytes >= 1024 ** 3:
        return f"{size_bytes / 1024 ** 3:.2f} GB"
    if size_bytes >= 1024 ** 2:
        return f"{size_bytes / 1024 ** 2:.2f} MB"
    return f"{size_bytes / 1024:.2f} KB"


@dataclass
class BackupResult:
    success: bool
    path: str | None = None
    size_bytes: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    connectivity_lost: bool = False


@dataclass
class RetentionResult:
    deleted_count: int = 0
    bytes_freed: int = 0
    kept_count: int = 0
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class BackupInfo:
    """One backup file on disk."""

    name: str
    path: str
    size_bytes: int
    created: datetime

    @property
    def size_display(self) -> str:
        return format_size(self.size_bytes)


def next_backup_path(
    directory: Path,
    database_name: str = BackupDefaults.DATABASE_NAME,
    today: date | None = None,
) -> Path:
    """First free <database>_<YYYYMMDD>[_N].bak name in directory."""
    today = today or date.today()
    stem = f"{database_name}_{today.strftime('%Y%m%d')}"
    candidate = directory / f"{stem}{BackupDefaults.FILE_EXTENSION}"
    suffix = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{suffix}{BackupDefaults.FILE_EXTENSION}"
        suffix += 1
    return candidate


class BackupManager:
    """
    Orchestrates store backups and backup-directory retention.

    Usage:
        manager = BackupManager(store, "C:/WSUS/Backups")
        backup_phase, retention_phase = manager.backup_and_prune()
    """

    def __init__(
        self,
        store: StoreClient,
        backup_dir: str | Path,
        database_name: str = BackupDefaults.DATABASE_NAME,
        max_age_days: int = BackupDefaults.MAX_AGE_DAYS,
    ):
        self._store = store
        self.backup_dir = Path(backup_dir)
        self.database_name = database_name
        self.max_age_days = max_age_days

    @classmethod
    def from_settings(cls, store: StoreClient, settings) -> "BackupManager":
        return cls(
            store,
            settings.BACKUP_DIR,
            database_name=settings.DATABASE_NAME,
            max_age_days=settings.BACKUP_RETENTION_DAYS,
        )

    @staticmethod
    def _discard_partial(path: Path) -> None:
        """A failed backup must not leave a file that looks like a valid snapshot."""
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial backup {path}: {e}")

    def backup(self, destination_dir: str | Path | None = None) -> BackupResult:
        """Write a full store backup. Never raises for store failures."""
        directory = Path(destination_dir) if destination_dir else self.backup_dir
        start = time.time()

        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create backup directory {directory}: {e}")
            return BackupResult(success=False, error=f"Cannot create backup directory: {e}")

        path = next_backup_path(directory, self.database_name)
        logger.info(f"Backing up store to {path}", extra={"event": "backup_start", "path": str(path)})

        try:
            self._store.backup_to(str(path))
            if not path.exists() or path.stat().st_size == 0:
                raise BackupError(f"Backup produced no file at {path}")
        except StoreConnectivityError as e:
            logger.error(f"Backup failed, store connection lost: {e}")
            self._discard_partial(path)
            return BackupResult(success=False, path=str(path), error=str(e), connectivity_lost=True)
        except (StoreError, BackupError) as e:
            logger.error(f"Backup failed: {e}")
            self._discard_partial(path)
            return BackupResult(success=False, path=str(path), error=str(e))

        size = path.stat().st_size
        duration = round(time.time() - start, 2)
        logger.info(
            f"Backup complete: {path.name} ({format_size(size)}) in {duration}s",
            extra={"event": "backup_complete", "path": str(path), "size_bytes": size,
                   "duration_ms": int(duration * 1000)},
        )
        return BackupResult(success=True, path=str(path), size_bytes=size, duration_seconds=duration)

    def apply_retention(
        self,
        directory: str | Path | None = None,
        max_age_days: int | None = None,
        now: float | None = None,
    ) -> RetentionResult:
        """
        Delete backups older than max_age_days, keeping the newest regardless.

        Args:
            directory: Backup directory (defaults to the manager's)
            max_age_days: Age horizon (defaults to the manager's)
            now: Reference epoch time (defaults to time.time())
        """
        directory = Path(directory) if directory else self.backup_dir
        max_age_days = self.max_age_days if max_age_days is None else max_age_days
        now = time.time() if now is None else now
        cutoff = now - max_age_days * 86400

        result = RetentionResult()
        if not directory.is_dir():
            logger.warning(f"Backup directory {directory} does not exist; nothing to prune")
            return result

        files = [p for p in directory.glob(BackupDefaults.FILE_PATTERN) if p.is_file()]
        if not files:
            return result

        newest = max(files, key=lambda p: p.stat().st_mtime)

        for path in files:
            stat = path.stat()
            if path == newest or stat.st_mtime >= cutoff:
                result.kept_count += 1
                continue
            try:
                path.unlink()
            except OSError as e:
                result.kept_count += 1
                result.errors.append(f"{path.name}: {e}")
                logger.warning(f"Could not delete old backup {path}: {e}")
                continue
            result.deleted_count += 1
            result.bytes_freed += stat.st_size
            result.deleted.append(str(path))
            logger.info(f"Deleted old backup {path.name}", extra={"path": str(path), "size_bytes": stat.st_size})

        logger.info(
            f"Backup retention: deleted {result.deleted_count}, kept {result.kept_count}, "
            f"freed {format_size(result.bytes_freed)}",
            extra={"event": "backup_retention", "size_bytes": result.bytes_freed},
        )
        return result

    def list_backups(self, directory: str | Path | None = None) -> list[BackupInfo]:
        """Backups in directory, newest first."""
        directory = Path(directory) if directory else self.backup_dir
        if not directory.is_dir():
            return []
        infos = []
        for path in directory.glob(BackupDefaults.FILE_PATTERN):
            if not path.is_file():
                continue
            stat = path.stat()
            infos.append(
                BackupInfo(
                    name=path.name,
                    path=str(path),
                    size_bytes=stat.st_size,
                    created=datetime.fromtimestamp(stat.st_mtime),
                )
            )
        return sorted(infos, key=lambda info: info.created, reverse=True)

    def restore(self, path: str | Path) -> None:
        """Restore the store from a backup file. Raises BackupError if the file is missing."""
        path = Path(path)
        if not path.is_file():
            raise BackupError(f"Backup file not found: {path}")
        self._store.restore_from(str(path))

    def backup_and_prune(self, destination_dir: str | Path | None = None) -> tuple[PhaseResult, PhaseResult]:
        """Backup, then retention only if the backup succeeded."""
        backup_phase = PhaseResult(phase="backup")
        result = self.backup(destination_dir)
        backup_phase.counts["size_bytes"] = result.size_bytes
        backup_phase.counts["duration_seconds"] = result.duration_seconds
        if result.path:
            backup_phase.counts["path"] = result.path

        if not result.success:
            backup_phase.fail(result.error or "Backup failed", fatal=result.connectivity_lost)
            return backup_phase, PhaseResult.skip("backup_retention", "backup did not succeed")

        retention_phase = PhaseResult(phase="backup_retention")
        retention = self.apply_retention(destination_dir)
        retention_phase.counts.update(
            {
                "deleted": retention.deleted_count,
                "kept": retention.kept_count,
                "bytes_freed": retention.bytes_freed,
            }
        )
        retention_phase.warnings.extend(retention.errors)
        return backup_phase, retention_phase
