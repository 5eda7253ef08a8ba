# patchkeeper/services/sync/discovery.py
"""
Sync source discovery.

A source root is either "flat" (a backup file and/or content folder
directly in the root) or an archive of Year/Month/Day snapshot folders.
For an archive, the folder holding the most recently modified backup file
becomes the effective source, and its backup and content are always taken
together.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from patchkeeper.constants import BackupDefaults, SyncDefaults
from patchkeeper.errors import SourceNotFoundError, SyncPreconditionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncSource:
    """Effective source folder for one sync."""

    folder: Path
    backup_file: Path | None
    content_dir: Path | None
    layout: str              # "flat" or "archive"


def find_backup_file(folder: Path) -> Path | None:
    """Newest backup file directly inside folder."""
    try:
        candidates = [p for p in folder.glob(BackupDefaults.FILE_PATTERN) if p.is_file()]
    except OSError:
        return None
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def find_content_dir(folder: Path, content_dir_name: str = SyncDefaults.CONTENT_DIR_NAME) -> Path | None:
    candidate = folder / content_dir_name
    return candidate if candidate.is_dir() else None


def require_accessible(root: Path, label: str) -> None:
    """Raise SyncPreconditionError unless root is an existing directory."""
    if not root.is_dir():
        raise SyncPreconditionError(f"{label} root is not accessible: {root}")


def discover_source(root: str | Path, content_dir_name: str = SyncDefaults.CONTENT_DIR_NAME) -> SyncSource:
    """
    Resolve the effective source folder under root.

    Raises:
        SyncPreconditionError: root is missing or not a directory
        SourceNotFoundError: no flat layout and no archived backup file
    """
    root = Path(root)
    require_accessible(root, "Source")

    backup_file = find_backup_file(root)
    content_dir = find_content_dir(root, content_dir_name)
    if backup_file or content_dir:
        logger.info(f"Using flat source layout at {root}")
        return SyncSource(folder=root, backup_file=backup_file, content_dir=content_dir, layout="flat")

    archived = [p for p in root.rglob(BackupDefaults.FILE_PATTERN) if p.is_file()]
    if not archived:
        raise SourceNotFoundError(f"No backup file or {content_dir_name} folder found under {root}")

    newest = max(archived, key=lambda p: p.stat().st_mtime)
    folder = newest.parent
    logger.info(f"Using newest archived snapshot {folder}", extra={"path": str(folder)})
    return SyncSource(
        folder=folder,
        backup_file=newest,
        content_dir=find_content_dir(folder, content_dir_name),
        layout="archive",
    )
