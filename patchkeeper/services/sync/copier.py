# patchkeeper/services/sync/copier.py
"""
Newer-only file copiers.

A file is copied only when the destination lacks it or holds an older
copy. A destination file that is newer than or as new as the source is
never overwritten, so repeated runs converge and never regress a file.
Timestamps within two seconds count as equal, so copies on FAT32 or exFAT
transport drives are not redone on every run.

Tree copies can be narrowed to files of a given age (AgeFilter) for
partial content exports.

Two implementations:
- RobocopyCopier: the Windows multi-threaded copy utility, interpreted
  only through its exit code
- NativeCopier: the same rule in Python with a worker pool and per-file
  retries, for hosts without robocopy
"""

import logging
import os
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from patchkeeper.constants import SyncDefaults
from patchkeeper.services.resilience import with_sync_retry

logger = logging.getLogger(__name__)


class CopyStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"      # some files skipped; safe to re-run
    FAILED = "failed"


@dataclass
class CopyOutcome:
    """Overall result of one copy invocation."""

    status: CopyStatus
    source: str
    destination: str
    files_copied: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    bytes_copied: int = 0
    exit_code: int | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != CopyStatus.FAILED

    def merge(self, other: "CopyOutcome") -> None:
        self.files_copied += other.files_copied
        self.files_skipped += other.files_skipped
        self.files_failed += other.files_failed
        self.bytes_copied += other.bytes_copied
        self.errors.extend(other.errors)
        if other.status == CopyStatus.FAILED:
            self.status = CopyStatus.FAILED
        elif other.status == CopyStatus.PARTIAL and self.status == CopyStatus.SUCCESS:
            self.status = CopyStatus.PARTIAL


def interpret_robocopy_exit(code: int) -> CopyStatus:
    """0-3 success, 4-7 partial (mismatches/extras), 8+ failure."""
    if code >= SyncDefaults.ROBOCOPY_FAILURE_EXIT:
        return CopyStatus.FAILED
    if code >= SyncDefaults.ROBOCOPY_PARTIAL_EXIT:
        return CopyStatus.PARTIAL
    return CopyStatus.SUCCESS


def needs_copy(
    source_file: Path,
    destination_file: Path,
    tolerance_seconds: float = SyncDefaults.MTIME_TOLERANCE_SECONDS,
) -> bool:
    """True if destination is missing or older than source by more than the tolerance."""
    try:
        dest_mtime = destination_file.stat().st_mtime_ns
    except FileNotFoundError:
        return True
    return dest_mtime + int(tolerance_seconds * 1_000_000_000) < source_file.stat().st_mtime_ns


@dataclass(frozen=True)
class AgeFilter:
    """
    Select files by age in days, like robocopy /MINAGE and /MAXAGE.

    min_age_days keeps files at least that old; max_age_days keeps files
    no older than that.
    """

    min_age_days: int | None = None
    max_age_days: int | None = None

    def matches(self, mtime: float, now: float | None = None) -> bool:
        age_days = ((now if now is not None else time.time()) - mtime) / 86400
        if self.min_age_days is not None and age_days < self.min_age_days:
            return False
        if self.max_age_days is not None and age_days > self.max_age_days:
            return False
        return True

    def robocopy_flags(self) -> list[str]:
        flags = []
        if self.min_age_days is not None:
            flags.append(f"/MINAGE:{self.min_age_days}")
        if self.max_age_days is not None:
            flags.append(f"/MAXAGE:{self.max_age_days}")
        return flags


class FileCopier(ABC):
    """Newer-only copy of a single file or a whole tree."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def copy_tree(self, source: Path, destination: Path, age_filter: AgeFilter | None = None) -> CopyOutcome:
        """Recursively copy source into destination, newer files only."""
        pass

    @abstractmethod
    def copy_file(self, source_file: Path, destination_dir: Path) -> CopyOutcome:
        """Copy one file into destination_dir if newer."""
        pass


class NativeCopier(FileCopier):
    """
    Pure-Python copier.

    Files are compared by mtime and copied with shutil.copy2 so the source
    mtime is preserved; a second run therefore copies nothing.
    """

    def __init__(
        self,
        workers: int = SyncDefaults.COPY_WORKERS,
        retries: int = SyncDefaults.COPY_RETRIES,
        retry_wait_seconds: float = SyncDefaults.COPY_RETRY_WAIT_SECONDS,
        cancel_event: threading.Event | None = None,
    ):
        self.workers = workers
        self._cancel = cancel_event or threading.Event()
        self._copy_with_retry = with_sync_retry(
            max_attempts=retries + 1,
            min_wait=retry_wait_seconds,
            max_wait=retry_wait_seconds,
            retry_exceptions=(OSError,),
        )(self._copy_if_newer)

    @property
    def name(self) -> str:
        return "native"

    def _copy_if_newer(self, source_file: Path, destination_file: Path) -> bool:
        if not needs_copy(source_file, destination_file):
            return False
        destination_file.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source_file, destination_file)
        return True

    def _copy_pairs(self, pairs: list[tuple[Path, Path]], outcome: CopyOutcome) -> CopyOutcome:
        def run(src: Path, dst: Path) -> bool | None:
            if self._cancel.is_set():
                return None
            return self._copy_with_retry(src, dst)

        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as executor:
            futures = {executor.submit(run, src, dst): (src, dst) for src, dst in pairs}
            for future in as_completed(futures):
                src, dst = futures[future]
                try:
                    copied = future.result()
                except OSError as e:
                    outcome.files_failed += 1
                    outcome.errors.append(f"{src}: {e}")
                    logger.warning(f"Copy failed for {src}: {e}")
                    continue
                if copied:
                    outcome.files_copied += 1
                    outcome.bytes_copied += dst.stat().st_size
                else:
                    outcome.files_skipped += 1

        if outcome.files_failed:
            outcome.status = CopyStatus.FAILED if outcome.files_failed == len(pairs) else CopyStatus.PARTIAL
        elif self._cancel.is_set():
            outcome.status = CopyStatus.PARTIAL
        return outcome

    def copy_tree(self, source: Path, destination: Path, age_filter: AgeFilter | None = None) -> CopyOutcome:
        outcome = CopyOutcome(status=CopyStatus.SUCCESS, source=str(source), destination=str(destination))
        now = time.time()
        try:
            destination.mkdir(parents=True, exist_ok=True)
            pairs = []
            for root, _dirs, files in os.walk(source):
                rel = Path(root).relative_to(source)
                (destination / rel).mkdir(parents=True, exist_ok=True)
                for name in files:
                    src = Path(root) / name
                    if age_filter and not age_filter.matches(src.stat().st_mtime, now):
                        continue
                    pairs.append((src, destination / rel / name))
        except OSError as e:
            outcome.status = CopyStatus.FAILED
            outcome.errors.append(str(e))
            logger.error(f"Cannot walk {source} -> {destination}: {e}")
            return outcome
        return self._copy_pairs(pairs, outcome)

    def copy_file(self, source_file: Path, destination_dir: Path) -> CopyOutcome:
        outcome = CopyOutcome(status=CopyStatus.SUCCESS, source=str(source_file), destination=str(destination_dir))
        return self._copy_pairs([(source_file, destination_dir / source_file.name)], outcome)


class RobocopyCopier(FileCopier):
    """
    robocopy wrapper. /XO excludes source files older than the destination
    copy; same-timestamp files are skipped as unchanged. /FFT compares
    timestamps with 2 s granularity for FAT-formatted media.
    """

    def __init__(
        self,
        workers: int = SyncDefaults.COPY_WORKERS,
        retries: int = SyncDefaults.COPY_RETRIES,
        retry_wait_seconds: int = SyncDefaults.COPY_RETRY_WAIT_SECONDS,
        executable: str = "robocopy",
    ):
        self.workers = workers
        self.retries = retries
        self.retry_wait_seconds = int(retry_wait_seconds)
        self.executable = executable

    @property
    def name(self) -> str:
        return "robocopy"

    def _common_flags(self) -> list[str]:
        return [
            "/XO",
            "/FFT",
            f"/MT:{self.workers}",
            f"/R:{self.retries}",
            f"/W:{self.retry_wait_seconds}",
            "/NP",
            "/NDL",
            "/NFL",
        ]

    def _run(self, args: list[str], source: str, destination: str) -> CopyOutcome:
        logger.debug(f"Running: {' '.join(args)}")
        try:
            proc = subprocess.run(args, capture_output=True, text=True, check=False)
        except OSError as e:
            logger.error(f"Could not start {self.executable}: {e}")
            return CopyOutcome(status=CopyStatus.FAILED, source=source, destination=destination, errors=[str(e)])

        status = interpret_robocopy_exit(proc.returncode)
        outcome = CopyOutcome(status=status, source=source, destination=destination, exit_code=proc.returncode)

        if status == CopyStatus.FAILED:
            detail = (proc.stderr or proc.stdout or "").strip()[-500:]
            outcome.errors.append(f"robocopy exit {proc.returncode}: {detail}")
            logger.error(f"robocopy failed ({proc.returncode}) copying {source}", extra={"exit_code": proc.returncode})
        elif status == CopyStatus.PARTIAL:
            logger.warning(
                f"robocopy partial copy ({proc.returncode}) for {source}; safe to re-run",
                extra={"exit_code": proc.returncode},
            )
        return outcome

    def copy_tree(self, source: Path, destination: Path, age_filter: AgeFilter | None = None) -> CopyOutcome:
        args = [self.executable, str(source), str(destination), "/E", *self._common_flags()]
        if age_filter:
            args.extend(age_filter.robocopy_flags())
        return self._run(args, str(source), str(destination))

    def copy_file(self, source_file: Path, destination_dir: Path) -> CopyOutcome:
        args = [
            self.executable,
            str(source_file.parent),
            str(destination_dir),
            source_file.name,
            *self._common_flags(),
        ]
        return self._run(args, str(source_file), str(destination_dir))


def create_copier(
    tool: str = "auto",
    workers: int = SyncDefaults.COPY_WORKERS,
    retries: int = SyncDefaults.COPY_RETRIES,
    retry_wait_seconds: int = SyncDefaults.COPY_RETRY_WAIT_SECONDS,
    cancel_event: threading.Event | None = None,
) -> FileCopier:
    """
    Build the configured copier.

    "auto" picks robocopy when it is on PATH, otherwise the native copier.
    """
    tool = tool.lower()
    if tool == "auto":
        tool = "robocopy" if shutil.which("robocopy") else "native"

    if tool == "robocopy":
        return RobocopyCopier(workers=workers, retries=retries, retry_wait_seconds=retry_wait_seconds)
    if tool == "native":
        return NativeCopier(
            workers=workers,
            retries=retries,
            retry_wait_seconds=retry_wait_seconds,
            cancel_event=cancel_event,
        )
    raise ValueError(f"Unknown copy tool: {tool}. Available: auto, robocopy, native")
