# patchkeeper/services/sync/archive.py
"""
Year -> Month -> Backup archive browsing.

Years are 4-digit folder names, newest first. Months are ordered by
calendar when the name is a known month name, then numerically for
digit-only names, then alphabetically. A backup folder is any folder
holding a backup file, either directly under the month or one level
down under a day folder.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from patchkeeper.constants import MONTH_NUMBERS, SyncDefaults
from patchkeeper.services.backup import format_size
from patchkeeper.services.sync.discovery import find_backup_file, find_content_dir

logger = logging.getLogger(__name__)

YEAR_PATTERN = re.compile(r"^\d{4}$")


@dataclass
class ArchiveBackup:
    name: str
    path: Path
    size_bytes: int | None = None
    has_backup_file: bool = False
    has_content: bool = False

    @property
    def size_display(self) -> str:
        return format_size(self.size_bytes) if self.size_bytes else "Unknown"


@dataclass
class ArchiveMonth:
    name: str
    path: Path
    backups: list[ArchiveBackup] = field(default_factory=list)

    @property
    def backup_count(self) -> int:
        return len(self.backups)


@dataclass
class ArchiveYear:
    year: str
    path: Path
    months: list[ArchiveMonth] = field(default_factory=list)


def month_sort_key(name: str) -> tuple:
    number = MONTH_NUMBERS.get(name.strip().lower())
    if number:
        return (0, number, "")
    if name.isdigit():
        return (1, int(name), "")
    return (2, 0, name.lower())


def _day_sort_key(name: str) -> tuple:
    return (1, int(name), "") if name.isdigit() else (0, 0, name.lower())


def _subdirs(path: Path) -> list[Path]:
    try:
        return [p for p in path.iterdir() if p.is_dir()]
    except OSError as e:
        logger.warning(f"Cannot list {path}: {e}")
        return []


def directory_size(path: Path) -> int:
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).stat().st_size
            except OSError:
                continue
    return total


def _to_backup(folder: Path, name: str, include_sizes: bool) -> ArchiveBackup:
    return ArchiveBackup(
        name=name,
        path=folder,
        size_bytes=directory_size(folder) if include_sizes else None,
        has_backup_file=True,
        has_content=find_content_dir(folder) is not None,
    )


def list_years(root: Path) -> list[ArchiveYear]:
    years = [ArchiveYear(year=p.name, path=p) for p in _subdirs(root) if YEAR_PATTERN.match(p.name)]
    return sorted(years, key=lambda y: y.year, reverse=True)


def list_months(year_path: Path) -> list[ArchiveMonth]:
    months = [ArchiveMonth(name=p.name, path=p) for p in _subdirs(year_path)]
    return sorted(months, key=lambda m: month_sort_key(m.name))


def list_backups(month_path: Path, include_sizes: bool = False) -> list[ArchiveBackup]:
    """Backup folders under a month, newest day first."""
    backups = []
    for child in sorted(_subdirs(month_path), key=lambda p: _day_sort_key(p.name), reverse=True):
        if find_backup_file(child):
            backups.append(_to_backup(child, child.name, include_sizes))
            continue
        # Day folder holding one or more snapshot folders
        for grandchild in sorted(_subdirs(child), key=lambda p: p.name, reverse=True):
            if find_backup_file(grandchild):
                backups.append(_to_backup(grandchild, f"{child.name}/{grandchild.name}", include_sizes))
    return backups


def scan_archive(root: str | Path, include_sizes: bool = False) -> list[ArchiveYear]:
    """Fully populated archive tree."""
    years = list_years(Path(root))
    for year in years:
        year.months = list_months(year.path)
        for month in year.months:
            month.backups = list_backups(month.path, include_sizes)
    return years


class ArchiveLevel(str, Enum):
    YEAR = "year"
    MONTH = "month"
    BACKUP = "backup"


class ArchiveNavigator:
    """
    Three-level selection over an archive root with one-step back.

    Usage:
        nav = ArchiveNavigator(root)
        nav.select(0)          # newest year
        nav.select(0)          # first month
        backup = nav.select(0) # a backup folder
        nav.back()             # up to months
        nav.leaves()           # every backup under the current selection
    """

    def __init__(self, root: str | Path, include_sizes: bool = False):
        self.root = Path(root)
        self.include_sizes = include_sizes
        self.level = ArchiveLevel.YEAR
        self.year: ArchiveYear | None = None
        self.month: ArchiveMonth | None = None
        self._years = list_years(self.root)

    def options(self) -> list:
        if self.level == ArchiveLevel.YEAR:
            return self._years
        if self.level == ArchiveLevel.MONTH:
            return self.year.months
        return self.month.backups

    def labels(self) -> list[str]:
        if self.level == ArchiveLevel.YEAR:
            return [y.year for y in self._years]
        if self.level == ArchiveLevel.MONTH:
            return [m.name for m in self.year.months]
        return [f"{b.name} ({b.size_display})" for b in self.month.backups]

    def select(self, index: int) -> ArchiveBackup | None:
        """Descend into option index. Returns the backup when a leaf is chosen."""
        options = self.options()
        if not 0 <= index < len(options):
            raise IndexError(f"Selection {index + 1} out of range (1-{len(options)})")

        if self.level == ArchiveLevel.YEAR:
            self.year = options[index]
            self.year.months = list_months(self.year.path)
            self.level = ArchiveLevel.MONTH
            return None
        if self.level == ArchiveLevel.MONTH:
            self.month = options[index]
            self.month.backups = list_backups(self.month.path, self.include_sizes)
            self.level = ArchiveLevel.BACKUP
            return None
        return options[index]

    def back(self) -> bool:
        """Step up one level. False when already at the top."""
        if self.level == ArchiveLevel.BACKUP:
            self.level = ArchiveLevel.MONTH
            self.month = None
            return True
        if self.level == ArchiveLevel.MONTH:
            self.level = ArchiveLevel.YEAR
            self.year = None
            return True
        return False

    def leaves(self) -> list[ArchiveBackup]:
        """Every backup folder under the current selection."""
        if self.level == ArchiveLevel.BACKUP:
            return list(self.month.backups)
        if self.level == ArchiveLevel.MONTH:
            months = self.year.months
        else:
            months = [m for y in self._years for m in list_months(y.path)]
        return [b for m in months for b in list_backups(m.path, self.include_sizes)]


def describe_archive(years: list[ArchiveYear]) -> list[str]:
    """Indented text lines for printing an archive tree."""
    lines = []
    for year in years:
        lines.append(year.year)
        for month in year.months:
            lines.append(f"  {month.name} ({month.backup_count} backups)")
            for backup in month.backups:
                content = f"+{SyncDefaults.CONTENT_DIR_NAME}" if backup.has_content else ""
                lines.append(f"    {backup.name} {backup.size_display} {content}".rstrip())
    return lines
