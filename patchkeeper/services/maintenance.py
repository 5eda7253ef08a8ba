# patchkeeper/services/maintenance.py
"""
Maintenance run orchestration.

Phases run strictly in order:
    precondition -> classify -> decline/approve -> supersession prune
    -> status prune -> metadata purge -> index maintenance -> shrink
    -> backup -> backup retention -> export

Rules:
- An unreachable store aborts the run before anything is mutated
- No catalog data: decisions and cleanup are skipped, index maintenance
  and backup still run
- Store connectivity loss in any phase skips every later store phase,
  including backup
- Shrink is optional and best-effort: a failed shrink is a warning
- Backup retention and export only follow a successful backup
- Cancellation skips every phase not yet started
"""

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from patchkeeper.catalog.base import CatalogClient
from patchkeeper.constants import SyncDefaults
from patchkeeper.errors import (
    MaintenanceAlreadyRunningError,
    StoreConnectivityError,
    StoreError,
    StoreUnavailableError,
)
from patchkeeper.logging_config import log_phase
from patchkeeper.services.backup import BackupManager
from patchkeeper.services.index_maintenance import IndexMaintenancePlanner
from patchkeeper.services.mutation import BatchedMutationEngine
from patchkeeper.services.resilience import poll_until
from patchkeeper.services.results import PhaseResult
from patchkeeper.services.retention.policy_engine import RetentionPolicy, evaluate_catalog
from patchkeeper.services.sync.protocol import DifferentialSyncProtocol, ExportMode
from patchkeeper.store import StoreClient, StoreStats

logger = logging.getLogger(__name__)


class MaintenancePhase(str, Enum):
    PRECONDITION = "precondition"
    CLASSIFY = "classify"
    DECLINE_APPROVE = "decline_approve"
    SUPERSESSION_PRUNE = "supersession_prune"
    STATUS_PRUNE = "status_prune"
    METADATA_PURGE = "metadata_purge"
    INDEX_MAINTENANCE = "index_maintenance"
    SHRINK = "shrink"
    BACKUP = "backup"
    BACKUP_RETENTION = "backup_retention"
    EXPORT = "export"


@dataclass
class MaintenanceOptions:
    skip_deep_cleanup: bool = False
    export_path: str | None = None
    export_mode: ExportMode = ExportMode.FULL
    export_days: int = 0
    apply_decisions: bool = True
    run_backup: bool = True
    shrink: bool | None = None  # None: use the runner default


@dataclass
class MaintenanceReport:
    """Structured result of one run: per-phase results plus before/after stats."""

    run_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    phases: list[PhaseResult] = field(default_factory=list)
    stats_before: StoreStats | None = None
    stats_after: StoreStats | None = None
    aborted: bool = False
    abort_reason: str | None = None

    @property
    def success(self) -> bool:
        return not self.aborted and all(p.success for p in self.phases)

    @property
    def store_lost(self) -> bool:
        return any(p.fatal for p in self.phases)

    @property
    def cancelled(self) -> bool:
        return any(p.cancelled for p in self.phases)

    def phase(self, name: str) -> PhaseResult | None:
        for result in self.phases:
            if result.phase == name:
                return result
        return None

    def abort(self, reason: str) -> None:
        self.aborted = True
        self.abort_reason = reason

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "stats_before": self.stats_before.to_dict() if self.stats_before else None,
            "stats_after": self.stats_after.to_dict() if self.stats_after else None,
            "phases": [p.to_dict() for p in self.phases],
        }


class RunMarker:
    """
    Exclusive run-in-progress marker file.

    Usage:
        with RunMarker(settings.run_marker_path):
            runner.run(options)
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def __enter__(self) -> "RunMarker":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as e:
            raise MaintenanceAlreadyRunningError(
                f"Another maintenance run is in progress (marker {self.path}). "
                "Remove the marker only if no run is active."
            ) from e
        with os.fdopen(fd, "w") as f:
            f.write(f"pid={os.getpid()} started={datetime.now(UTC).isoformat()}\n")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.path.unlink(missing_ok=True)


class MaintenanceRunner:
    """
    Runs the maintenance phases against one store.

    Usage:
        runner = MaintenanceRunner.from_settings(settings, store, catalog)
        report = runner.run(MaintenanceOptions(skip_deep_cleanup=True))
    """

    def __init__(
        self,
        store: StoreClient,
        catalog: CatalogClient,
        policy: RetentionPolicy,
        mutation: BatchedMutationEngine,
        index_planner: IndexMaintenancePlanner,
        backup_manager: BackupManager,
        sync_protocol: DifferentialSyncProtocol | None = None,
        content_dir: str | Path | None = None,
        ready_attempts: int = 3,
        ready_interval_seconds: float = 5.0,
        shrink_after_cleanup: bool = False,
        shrink_target_free_percent: int = 10,
        cancel_event: threading.Event | None = None,
        sleep=time.sleep,
    ):
        self._store = store
        self._catalog = catalog
        self.policy = policy
        self.mutation = mutation
        self.index_planner = index_planner
        self.backup_manager = backup_manager
        self.sync_protocol = sync_protocol
        self.content_dir = Path(content_dir) if content_dir else None
        self.ready_attempts = ready_attempts
        self.ready_interval_seconds = ready_interval_seconds
        self.shrink_after_cleanup = shrink_after_cleanup
        self.shrink_target_free_percent = shrink_target_free_percent
        self._cancel = cancel_event or threading.Event()
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings,
        store: StoreClient,
        catalog: CatalogClient,
        cancel_event: threading.Event | None = None,
    ) -> "MaintenanceRunner":
        cancel_event = cancel_event or threading.Event()
        return cls(
            store,
            catalog,
            RetentionPolicy.from_settings(settings),
            BatchedMutationEngine.from_settings(store, settings, cancel_event),
            IndexMaintenancePlanner.from_settings(store, settings, cancel_event),
            BackupManager.from_settings(store, settings),
            sync_protocol=DifferentialSyncProtocol.from_settings(settings, cancel_event),
            content_dir=Path(settings.CONTENT_PATH) / SyncDefaults.CONTENT_DIR_NAME,
            ready_attempts=settings.STORE_READY_ATTEMPTS,
            ready_interval_seconds=settings.STORE_READY_INTERVAL_SECONDS,
            shrink_after_cleanup=settings.SHRINK_AFTER_CLEANUP,
            shrink_target_free_percent=settings.SHRINK_TARGET_FREE_PERCENT,
            cancel_event=cancel_event,
        )

    def _safe_stats(self) -> StoreStats | None:
        try:
            return self._store.get_stats()
        except StoreError as e:
            logger.warning(f"Could not read store statistics: {e}")
            return None

    def _blocked(self, report: MaintenanceReport) -> str | None:
        """Why later store phases must not start, if anything."""
        if self._cancel.is_set() or report.cancelled:
            return "run cancelled"
        if report.store_lost:
            return "store connection lost in an earlier phase"
        return None

    def _add(self, report: MaintenanceReport, result: PhaseResult) -> PhaseResult:
        report.phases.append(result)
        return result

    def wait_for_store(self) -> None:
        """Poll the store until it accepts a connection. Raises StoreUnavailableError."""
        ready = poll_until(
            self._store.test_connection,
            interval_seconds=self.ready_interval_seconds,
            max_attempts=self.ready_attempts,
            description="store connection",
            sleep=self._sleep,
        )
        if not ready.satisfied:
            raise StoreUnavailableError(f"Store unreachable after {ready.attempts} attempts")

    def run(self, options: MaintenanceOptions | None = None) -> MaintenanceReport:
        options = options or MaintenanceOptions()
        report = MaintenanceReport(run_id=uuid.uuid4().hex[:12])

        try:
            with log_phase(MaintenancePhase.PRECONDITION.value, run_id=report.run_id):
                self.wait_for_store()
        except StoreUnavailableError as e:
            report.abort(str(e))
            failed = PhaseResult(phase=MaintenancePhase.PRECONDITION.value)
            failed.fail(report.abort_reason)
            self._add(report, failed)
            report.finished_at = datetime.now(UTC)
            logger.error(report.abort_reason, extra={"event": "run_aborted"})
            return report

        report.stats_before = self._safe_stats()

        self._run_store_phases(report, options)
        self._run_backup_phases(report, options)

        if not report.store_lost:
            report.stats_after = self._safe_stats()
        report.finished_at = datetime.now(UTC)
        logger.info(
            f"Maintenance run {report.run_id} finished: {'success' if report.success else 'with failures'}",
            extra={"event": "run_complete"},
        )
        return report

    def _run_store_phases(self, report: MaintenanceReport, options: MaintenanceOptions) -> None:
        cleanup_phases = [
            MaintenancePhase.SUPERSESSION_PRUNE,
            MaintenancePhase.STATUS_PRUNE,
            MaintenancePhase.METADATA_PURGE,
        ]

        with log_phase(MaintenancePhase.CLASSIFY.value):
            decision = evaluate_catalog(self._catalog, self.policy)

        if decision is None:
            classify = PhaseResult(phase=MaintenancePhase.CLASSIFY.value)
            classify.fail("Catalog listing unavailable; no data for this run")
            self._add(report, classify)
            skipped = [MaintenancePhase.DECLINE_APPROVE] if options.apply_decisions else []
            if not options.skip_deep_cleanup:
                skipped += cleanup_phases
            for phase in skipped:
                self._add(report, PhaseResult.skip(phase.value, "no catalog data"))
        else:
            classify = PhaseResult(phase=MaintenancePhase.CLASSIFY.value, counts=decision.summary())
            classify.counts["triggers"] = dict(decision.trigger_counts)
            if decision.approval_refused:
                classify.warnings.append(
                    f"{len(decision.manual_review)} approval candidates exceed the cap of "
                    f"{self.policy.auto_approve_cap}; manual review required"
                )
            self._add(report, classify)

            if options.apply_decisions:
                with log_phase(MaintenancePhase.DECLINE_APPROVE.value):
                    self._add(report, self.mutation.apply_decisions(self._catalog, decision, self.policy.target_group))

            if not options.skip_deep_cleanup:
                reason = self._blocked(report)
                if reason:
                    for phase in cleanup_phases:
                        self._add(report, PhaseResult.skip(phase.value, reason))
                else:
                    with log_phase("deep_cleanup"):
                        for result in self.mutation.run_deep_cleanup(
                            self._catalog,
                            [u.update_id for u in decision.to_purge_candidates],
                            status_cutoff=decision.cutoff,
                        ):
                            self._add(report, result)

        reason = self._blocked(report)
        if reason:
            self._add(report, PhaseResult.skip(MaintenancePhase.INDEX_MAINTENANCE.value, reason))
        else:
            with log_phase(MaintenancePhase.INDEX_MAINTENANCE.value):
                self._add(report, self.index_planner.run())

        shrink = self.shrink_after_cleanup if options.shrink is None else options.shrink
        if shrink:
            reason = self._blocked(report)
            if reason:
                self._add(report, PhaseResult.skip(MaintenancePhase.SHRINK.value, reason))
            else:
                with log_phase(MaintenancePhase.SHRINK.value):
                    self._add(report, self._shrink())

    def _shrink(self) -> PhaseResult:
        """Best-effort shrink: only a lost connection fails the phase."""
        result = PhaseResult(phase=MaintenancePhase.SHRINK.value)
        try:
            before = self._store.get_space_usage()
            self._store.shrink(self.shrink_target_free_percent)
            after = self._store.get_space_usage()
        except StoreConnectivityError as e:
            result.fail(str(e), fatal=True)
            return result
        except StoreError as e:
            logger.warning(f"Store shrink failed, continuing: {e}")
            result.warnings.append(f"Shrink failed: {e}")
            return result
        result.counts.update(
            {
                "allocated_mb_before": before["allocated_mb"],
                "allocated_mb_after": after["allocated_mb"],
                "free_mb_after": after["free_mb"],
            }
        )
        return result

    def _run_backup_phases(self, report: MaintenanceReport, options: MaintenanceOptions) -> None:
        if not options.run_backup:
            return

        reason = self._blocked(report)
        if reason:
            self._add(report, PhaseResult.skip(MaintenancePhase.BACKUP.value, reason))
            self._add(report, PhaseResult.skip(MaintenancePhase.BACKUP_RETENTION.value, reason))
            if options.export_path:
                self._add(report, PhaseResult.skip(MaintenancePhase.EXPORT.value, reason))
            return

        with log_phase(MaintenancePhase.BACKUP.value):
            backup_phase, retention_phase = self.backup_manager.backup_and_prune()
        self._add(report, backup_phase)
        self._add(report, retention_phase)

        if not options.export_path:
            return
        if not backup_phase.success:
            self._add(report, PhaseResult.skip(MaintenancePhase.EXPORT.value, "backup did not succeed"))
            return
        if self.sync_protocol is None:
            self._add(report, PhaseResult.skip(MaintenancePhase.EXPORT.value, "no sync protocol configured"))
            return

        with log_phase(MaintenancePhase.EXPORT.value):
            result = self.sync_protocol.export_snapshot(
                backup_phase.counts["path"],
                self.content_dir,
                options.export_path,
                mode=options.export_mode,
                days=options.export_days,
            )
        self._add(report, result.to_phase(MaintenancePhase.EXPORT.value))

    def run_cleanup(self, shrink: bool | None = None) -> MaintenanceReport:
        """Deep cleanup and index maintenance (and optionally shrink) only: no decisions, no backup."""
        return self.run(MaintenanceOptions(apply_decisions=False, run_backup=False, shrink=shrink))
