# patchkeeper/services/sync/protocol.py
"""
Differential synchronization protocol.

Moves a backup file and its content tree between a source root and a
destination root, copying only missing or newer files:
- sync(): flat "latest" copy, discovering the effective source folder
- import_backup(): one chosen archive snapshot straight into the destination root
- copy_all(): every archive leaf under a selection, kept at its archive path,
  continuing past failures
- export_snapshot(): write a self-contained <root>/YYYY/Mon/D snapshot plus
  import instructions; content is full, differential (files at least N
  days old, robocopy /MINAGE) or new-only (files changed in the last N
  days, robocopy /MAXAGE)

Inaccessible roots are reported as precondition failures before any copy
starts. Partial copies are warnings; re-running converges.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from patchkeeper.constants import MONTH_ABBREVIATIONS, SyncDefaults
from patchkeeper.errors import SourceNotFoundError, SyncPreconditionError
from patchkeeper.services.results import PhaseResult
from patchkeeper.services.sync.archive import ArchiveBackup
from patchkeeper.services.sync.copier import AgeFilter, CopyOutcome, CopyStatus, FileCopier, create_copier
from patchkeeper.services.sync.discovery import (
    SyncSource,
    discover_source,
    find_backup_file,
    find_content_dir,
    require_accessible,
)

logger = logging.getLogger(__name__)


class ExportMode(str, Enum):
    FULL = "full"
    DIFFERENTIAL = "differential"   # content at least N days old
    NEW_ONLY = "new-only"           # content changed within the last N days


def export_age_filter(mode: ExportMode | str, days: int) -> AgeFilter | None:
    """Content filter for an export mode. A zero-day window exports everything."""
    mode = ExportMode(mode)
    if mode == ExportMode.FULL or days <= 0:
        return None
    if mode == ExportMode.DIFFERENTIAL:
        return AgeFilter(min_age_days=days)
    return AgeFilter(max_age_days=days)


def _describe_export(mode: ExportMode, days: int) -> str:
    if export_age_filter(mode, days) is None:
        return "full"
    if mode == ExportMode.DIFFERENTIAL:
        return f"differential, files at least {days} days old"
    return f"new only, files changed in the last {days} days"


@dataclass
class SyncResult:
    """Aggregated result of one sync, bulk copy or export."""

    source: str
    destination: str
    mode: str
    success: bool = True
    precondition_failed: bool = False
    cancelled: bool = False
    effective_source: str | None = None
    leaves_total: int = 0
    leaves_ok: int = 0
    leaves_failed: int = 0
    files_copied: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    bytes_copied: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def absorb(self, outcome: CopyOutcome) -> None:
        self.files_copied += outcome.files_copied
        self.files_skipped += outcome.files_skipped
        self.files_failed += outcome.files_failed
        self.bytes_copied += outcome.bytes_copied
        if outcome.status == CopyStatus.PARTIAL:
            self.warnings.append(f"Partial copy from {outcome.source}; re-run to complete")
            self.warnings.extend(outcome.errors)
        elif outcome.status == CopyStatus.FAILED:
            self.errors.extend(outcome.errors or [f"Copy failed from {outcome.source}"])

    def fail_precondition(self, message: str) -> "SyncResult":
        self.success = False
        self.precondition_failed = True
        self.errors.append(message)
        return self

    def to_phase(self, phase: str = "sync") -> PhaseResult:
        result = PhaseResult(
            phase=phase,
            success=self.success,
            counts={
                "files_copied": self.files_copied,
                "files_skipped": self.files_skipped,
                "files_failed": self.files_failed,
                "bytes_copied": self.bytes_copied,
                "leaves_total": self.leaves_total,
                "leaves_ok": self.leaves_ok,
                "leaves_failed": self.leaves_failed,
            },
            errors=list(self.errors),
            warnings=list(self.warnings),
            cancelled=self.cancelled,
        )
        if self.effective_source:
            result.counts["effective_source"] = self.effective_source
        return result

    def to_dict(self) -> dict:
        return asdict(self)


def snapshot_folder(export_root: Path, when: datetime) -> Path:
    """<root>/<YYYY>/<Mon>/<D> with no zero padding on the day."""
    return export_root / f"{when.year:04d}" / MONTH_ABBREVIATIONS[when.month - 1] / str(when.day)


INSTRUCTIONS_TEMPLATE = """Patch server export snapshot
============================

Created:  {created}
Backup:   {backup_name}
Content:  {content_note}
Mode:     {mode_note}

This folder is self-contained. To import it on the disconnected server:

1. Copy the backup file and content into place (newer files only):

       patchkeeper sync --source "{folder}" --destination "<content path on the target server>" --mode full

2. Restore the store from the copied backup:

       patchkeeper restore --file "<content path on the target server>\\{backup_name}" --confirm

3. Run maintenance once the store is back online:

       patchkeeper run --skip-deep-cleanup
"""


class DifferentialSyncProtocol:
    """
    Usage:
        protocol = DifferentialSyncProtocol(create_copier("native"))
        result = protocol.sync("E:/", "C:/WSUS")
    """

    def __init__(
        self,
        copier: FileCopier,
        content_dir_name: str = SyncDefaults.CONTENT_DIR_NAME,
        cancel_event: threading.Event | None = None,
    ):
        self.copier = copier
        self.content_dir_name = content_dir_name
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def from_settings(cls, settings, cancel_event: threading.Event | None = None) -> "DifferentialSyncProtocol":
        copier = create_copier(
            settings.COPY_TOOL,
            workers=settings.COPY_WORKERS,
            retries=settings.COPY_RETRIES,
            retry_wait_seconds=settings.COPY_RETRY_WAIT_SECONDS,
            cancel_event=cancel_event,
        )
        return cls(copier, cancel_event=cancel_event)

    # -------------------------------------------------------------------------
    # Preconditions
    # -------------------------------------------------------------------------

    def _prepare_destination(self, destination: Path) -> None:
        """Destination must exist, or be creatable inside an existing parent."""
        if destination.is_dir():
            return
        if destination.exists() or not destination.parent.is_dir():
            raise SyncPreconditionError(f"Destination root is not accessible: {destination}")
        try:
            destination.mkdir()
        except OSError as e:
            raise SyncPreconditionError(f"Destination root is not accessible: {destination}: {e}") from e

    # -------------------------------------------------------------------------
    # Copy
    # -------------------------------------------------------------------------

    def sync_leaf(
        self,
        source: SyncSource,
        destination: Path,
        age_filter: AgeFilter | None = None,
    ) -> CopyOutcome:
        """Copy one snapshot's backup file and content subtree together."""
        outcome = CopyOutcome(status=CopyStatus.SUCCESS, source=str(source.folder), destination=str(destination))
        if source.backup_file:
            outcome.merge(self.copier.copy_file(source.backup_file, destination))
        if source.content_dir:
            outcome.merge(
                self.copier.copy_tree(source.content_dir, destination / self.content_dir_name, age_filter=age_filter)
            )
        return outcome

    def _run_single(self, result: SyncResult, source: SyncSource, destination: Path) -> SyncResult:
        result.effective_source = str(source.folder)
        result.leaves_total = 1
        if self._cancel.is_set():
            result.cancelled = True
            return result

        logger.info(
            f"Syncing {source.folder} -> {destination} using {self.copier.name}",
            extra={"event": "sync_start", "path": str(source.folder)},
        )
        outcome = self.sync_leaf(source, destination)
        result.absorb(outcome)
        if outcome.ok:
            result.leaves_ok = 1
        else:
            result.leaves_failed = 1
            result.success = False
        # Cancelled copies come back as PARTIAL with the rest skipped
        result.cancelled = self._cancel.is_set()

        self._log_summary(result)
        return result

    def sync(self, source_root: str | Path, destination_root: str | Path) -> SyncResult:
        """Flat/full sync from the effective source folder under source_root."""
        source_root, destination_root = Path(source_root), Path(destination_root)
        result = SyncResult(source=str(source_root), destination=str(destination_root), mode="full")

        try:
            source = discover_source(source_root, self.content_dir_name)
            self._prepare_destination(destination_root)
        except (SyncPreconditionError, SourceNotFoundError) as e:
            logger.error(f"Sync precondition failed: {e}")
            return result.fail_precondition(str(e))

        return self._run_single(result, source, destination_root)

    def import_backup(self, leaf: ArchiveBackup, destination_root: str | Path) -> SyncResult:
        """
        Import one chosen archive snapshot into destination_root.

        The snapshot's backup file and content land directly in the
        destination root, the same place a flat sync puts them.
        """
        destination_root = Path(destination_root)
        result = SyncResult(source=str(leaf.path), destination=str(destination_root), mode="browse-archive")

        try:
            require_accessible(leaf.path, "Source")
            self._prepare_destination(destination_root)
        except SyncPreconditionError as e:
            logger.error(f"Sync precondition failed: {e}")
            return result.fail_precondition(str(e))

        source = SyncSource(
            folder=leaf.path,
            backup_file=find_backup_file(leaf.path),
            content_dir=find_content_dir(leaf.path, self.content_dir_name),
            layout="archive",
        )
        if source.backup_file is None and source.content_dir is None:
            return result.fail_precondition(f"No backup file or {self.content_dir_name} folder in {leaf.path}")
        return self._run_single(result, source, destination_root)

    def copy_all(
        self,
        leaves: list[ArchiveBackup],
        source_root: str | Path,
        destination_root: str | Path,
    ) -> SyncResult:
        """
        Copy every leaf, keeping its path relative to source_root.

        A failed leaf is recorded and the loop moves on. Cancellation is
        checked before each leaf.
        """
        source_root, destination_root = Path(source_root), Path(destination_root)
        result = SyncResult(source=str(source_root), destination=str(destination_root), mode="browse-archive")
        result.leaves_total = len(leaves)

        try:
            require_accessible(source_root, "Source")
            self._prepare_destination(destination_root)
        except SyncPreconditionError as e:
            logger.error(f"Sync precondition failed: {e}")
            return result.fail_precondition(str(e))

        for leaf in leaves:
            if self._cancel.is_set():
                result.cancelled = True
                result.warnings.append(f"Cancelled before {leaf.name}")
                break

            try:
                relative = leaf.path.relative_to(source_root)
            except ValueError:
                relative = Path(leaf.path.name)
            source = SyncSource(
                folder=leaf.path,
                backup_file=find_backup_file(leaf.path),
                content_dir=find_content_dir(leaf.path, self.content_dir_name),
                layout="archive",
            )
            outcome = self.sync_leaf(source, destination_root / relative)
            result.absorb(outcome)
            if outcome.ok:
                result.leaves_ok += 1
            else:
                result.leaves_failed += 1
                logger.warning(f"Copy of {leaf.name} failed; continuing", extra={"path": str(leaf.path)})

        result.cancelled = result.cancelled or self._cancel.is_set()
        result.success = result.leaves_failed == 0
        self._log_summary(result)
        return result

    def export_snapshot(
        self,
        backup_file: str | Path,
        content_dir: str | Path | None,
        export_root: str | Path,
        when: datetime | None = None,
        mode: ExportMode | str = ExportMode.FULL,
        days: int = 0,
    ) -> SyncResult:
        """
        Write backup + content into <export_root>/YYYY/Mon/D with import instructions.

        The backup file is always exported. The content tree is filtered by
        the export mode; a partial content mirror imports cleanly because
        the import side only ever adds missing or newer files.
        """
        backup_file = Path(backup_file)
        content_dir = Path(content_dir) if content_dir else None
        export_root = Path(export_root)
        when = when or datetime.now()
        mode = ExportMode(mode)
        age_filter = export_age_filter(mode, days)
        result = SyncResult(source=str(backup_file.parent), destination=str(export_root), mode="export")

        if not backup_file.is_file():
            return result.fail_precondition(f"Backup file not found: {backup_file}")
        try:
            self._prepare_destination(export_root)
            folder = snapshot_folder(export_root, when)
            folder.mkdir(parents=True, exist_ok=True)
        except (SyncPreconditionError, OSError) as e:
            logger.error(f"Export precondition failed: {e}")
            return result.fail_precondition(str(e))

        result.effective_source = str(folder)
        result.leaves_total = 1
        has_content = content_dir is not None and content_dir.is_dir()
        if content_dir is not None and not has_content:
            result.warnings.append(f"Content folder not found, exporting backup only: {content_dir}")

        source = SyncSource(
            folder=backup_file.parent,
            backup_file=backup_file,
            content_dir=content_dir if has_content else None,
            layout="flat",
        )
        mode_note = _describe_export(mode, days)
        logger.info(f"Exporting to {folder} ({mode_note})", extra={"event": "export_start", "path": str(folder)})
        outcome = self.sync_leaf(source, folder, age_filter=age_filter)
        result.absorb(outcome)
        if outcome.ok:
            result.leaves_ok = 1
        else:
            result.leaves_failed = 1
            result.success = False
        result.cancelled = self._cancel.is_set()

        instructions = INSTRUCTIONS_TEMPLATE.format(
            created=when.strftime("%Y-%m-%d %H:%M"),
            backup_name=backup_file.name,
            content_note=self.content_dir_name if has_content else "not included",
            mode_note=mode_note,
            folder=folder,
        )
        (folder / SyncDefaults.INSTRUCTIONS_FILE).write_text(instructions, encoding="utf-8")
        logger.info(f"Export snapshot written to {folder}", extra={"event": "export_complete", "path": str(folder)})
        return result

    def _log_summary(self, result: SyncResult) -> None:
        logger.info(
            f"Sync {result.mode}: {result.files_copied} copied, {result.files_skipped} unchanged, "
            f"{result.files_failed} failed ({result.leaves_ok}/{result.leaves_total} snapshots)",
            extra={"event": "sync_complete", "items_processed": result.files_copied,
                   "items_failed": result.files_failed},
        )
