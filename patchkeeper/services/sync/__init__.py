# patchkeeper/services/sync/__init__.py
"""
Differential synchronization between connected and disconnected sites.

- copier: newer-only file copy (robocopy or native)
- discovery: flat vs. archived source resolution
- archive: Year/Month/Backup browsing
- protocol: sync, bulk copy and export snapshots
"""

from patchkeeper.services.sync.archive import (
    ArchiveBackup,
    ArchiveLevel,
    ArchiveMonth,
    ArchiveNavigator,
    ArchiveYear,
    month_sort_key,
    scan_archive,
)
from patchkeeper.services.sync.copier import (
    AgeFilter,
    CopyOutcome,
    CopyStatus,
    FileCopier,
    NativeCopier,
    RobocopyCopier,
    create_copier,
    interpret_robocopy_exit,
)
from patchkeeper.services.sync.discovery import SyncSource, discover_source
from patchkeeper.services.sync.protocol import (
    DifferentialSyncProtocol,
    ExportMode,
    SyncResult,
    export_age_filter,
    snapshot_folder,
)

__all__ = [
    "AgeFilter",
    "ArchiveBackup",
    "ArchiveLevel",
    "ArchiveMonth",
    "ArchiveNavigator",
    "ArchiveYear",
    "CopyOutcome",
    "CopyStatus",
    "DifferentialSyncProtocol",
    "ExportMode",
    "FileCopier",
    "NativeCopier",
    "RobocopyCopier",
    "SyncResult",
    "SyncSource",
    "create_copier",
    "discover_source",
    "export_age_filter",
    "interpret_robocopy_exit",
    "month_sort_key",
    "scan_archive",
]
