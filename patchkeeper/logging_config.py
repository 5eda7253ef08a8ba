"""
Structured JSON logging for maintenance runs.

Provides structured logging with run IDs for correlating logs across
maintenance phases, plus a phase context manager and a progress tracker
for long per-item loops.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime

# Context variables for run correlation
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
phase_var: ContextVar[str | None] = ContextVar("phase", default=None)


# -----------------------------------------------------------------------------
# JSON Formatter
# -----------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """
    Format log records as single-line JSON.

    Output format:
    {"timestamp": "...", "level": "INFO", "message": "...", "run_id": "...", ...}
    """

    EXTRA_KEYS = (
        "event",
        "duration_ms",
        "items_processed",
        "items_failed",
        "rows_deleted",
        "batch",
        "update_id",
        "index_name",
        "table_name",
        "size_bytes",
        "path",
        "exit_code",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = run_id_var.get()
        if run_id:
            log_data["run_id"] = run_id

        phase = getattr(record, "phase", None) or phase_var.get()
        if phase:
            log_data["phase"] = phase

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_KEYS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


def configure_logging(json_format: bool = False, level: str = "INFO") -> None:
    """
    Configure logging for scheduled runs or interactive use.

    Args:
        json_format: If True, use JSON format (for log shipping). If False, use human-readable format.
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Context Managers
# -----------------------------------------------------------------------------


@contextmanager
def log_phase(phase: str, run_id: str | None = None):
    """
    Context manager for phase-level logging.

    Logs phase start and end with duration.

    Usage:
        with log_phase("index_maintenance", run_id=report.run_id):
            # ... phase logic ...
    """
    if run_id:
        run_id_var.set(run_id)
    token = phase_var.set(phase)

    start_time = time.time()
    logger = logging.getLogger("patchkeeper.phase")

    logger.info(f"Phase {phase} started", extra={"event": "phase_start", "phase": phase})

    try:
        yield
        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Phase {phase} completed",
            extra={"event": "phase_complete", "phase": phase, "duration_ms": duration_ms},
        )
    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(
            f"Phase {phase} failed: {e}",
            extra={"event": "phase_failed", "phase": phase, "duration_ms": duration_ms},
            exc_info=True,
        )
        raise
    finally:
        phase_var.reset(token)


# -----------------------------------------------------------------------------
# Progress Tracker
# -----------------------------------------------------------------------------


@dataclass
class ProgressTracker:
    """
    Track progress for per-item operations with periodic logging.

    Usage:
        tracker = ProgressTracker(total=1200, stage="metadata_purge", log_every=100)
        for item in items:
            tracker.increment(success=purge(item))
        tracker.finish()
    """

    total: int
    stage: str
    log_every: int = 100

    processed: int = field(default=0, init=False)
    succeeded: int = field(default=0, init=False)
    failed: int = field(default=0, init=False)
    _start_time: float = field(default_factory=time.time, init=False)
    _logger: logging.Logger = field(init=False)

    def __post_init__(self):
        self._logger = logging.getLogger("patchkeeper.progress")

    def increment(self, success: bool = True) -> None:
        """Increment progress counter."""
        self.processed += 1
        if success:
            self.succeeded += 1
        else:
            self.failed += 1

        if self.processed % self.log_every == 0 or self.processed == self.total:
            self._log_progress()

    def _log_progress(self) -> None:
        elapsed = time.time() - self._start_time
        rate = self.processed / elapsed if elapsed > 0 else 0
        remaining = (self.total - self.processed) / rate if rate > 0 else 0

        self._logger.info(
            f"{self.stage}: {self.processed}/{self.total} "
            f"({self.succeeded} ok, {self.failed} failed) "
            f"[{rate:.1f}/s, ~{remaining:.0f}s remaining]",
            extra={
                "event": "progress_update",
                "phase": self.stage,
                "items_processed": self.processed,
                "items_failed": self.failed,
            },
        )

    def finish(self) -> dict:
        """Finalize progress tracking and return summary."""
        elapsed = time.time() - self._start_time

        self._logger.info(
            f"{self.stage}: Completed {self.processed}/{self.total} "
            f"({self.succeeded} ok, {self.failed} failed) in {elapsed:.1f}s",
            extra={
                "event": "progress_complete",
                "phase": self.stage,
                "items_processed": self.processed,
                "items_failed": self.failed,
                "duration_ms": int(elapsed * 1000),
            },
        )

        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_seconds": round(elapsed, 1),
        }
