# patchkeeper/services/mutation.py
"""
Batched mutation engine for destructive store operations.

Handles:
- Chunked deletes (at most batch_size rows per statement) with an
  inter-batch pause, so no single statement holds locks for long
- Coarse progress logging for operator monitoring
- Per-item decline/approve/purge loops: continue on item errors,
  abort the phase on connectivity loss
- Cooperative cancellation between every batch and every item
- Ordering: supersession edges are pruned before metadata is purged
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from patchkeeper.catalog.base import CatalogClient
from patchkeeper.constants import MutationDefaults
from patchkeeper.errors import CatalogUnavailableError, StoreConnectivityError, StoreError
from patchkeeper.logging_config import ProgressTracker
from patchkeeper.models import RevisionState
from patchkeeper.services.results import ItemErrorKind, ItemOutcome, PhaseResult
from patchkeeper.services.retention.policy_engine import RetentionDecision
from patchkeeper.store import StoreClient
from patchkeeper.store import statements

logger = logging.getLogger(__name__)


@dataclass
class BatchDeleteResult:
    """Result of one chunked delete loop."""

    label: str
    rows_deleted: int = 0
    batches: int = 0
    statements_executed: int = 0
    cancelled: bool = False
    aborted: bool = False
    connectivity_lost: bool = False
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def completed(self) -> bool:
        return not (self.cancelled or self.aborted)


class BatchedMutationEngine:
    """
    Executes bulk deletes and per-item lifecycle commands.

    Usage:
        engine = BatchedMutationEngine(store, cancel_event=cancel)
        result = engine.prune_supersession_edges(RevisionState.SUPERSEDED)
    """

    def __init__(
        self,
        store: StoreClient,
        batch_size: int = MutationDefaults.BATCH_SIZE,
        batch_delay_seconds: float = MutationDefaults.BATCH_DELAY_SECONDS,
        progress_every: int = MutationDefaults.PROGRESS_EVERY_ROWS,
        purge_group_size: int = MutationDefaults.PURGE_GROUP_SIZE,
        cancel_event: threading.Event | None = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._store = store
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.progress_every = progress_every
        self.purge_group_size = purge_group_size
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def from_settings(cls, store: StoreClient, settings, cancel_event: threading.Event | None = None):
        return cls(
            store,
            batch_size=settings.MUTATION_BATCH_SIZE,
            batch_delay_seconds=settings.MUTATION_BATCH_DELAY_SECONDS,
            progress_every=settings.MUTATION_PROGRESS_EVERY,
            purge_group_size=settings.PURGE_GROUP_SIZE,
            cancel_event=cancel_event,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # -------------------------------------------------------------------------
    # Chunked deletes
    # -------------------------------------------------------------------------

    def delete_in_batches(self, statement, params: dict, label: str) -> BatchDeleteResult:
        """
        Repeat a bounded delete until a batch comes back short.

        The statement must accept :batch_size and delete at most that many
        rows. Each statement commits on its own; a cancel or connectivity
        loss leaves every completed batch committed and nothing else touched.
        """
        result = BatchDeleteResult(label=label)
        start = time.time()

        while True:
            if self.cancelled:
                result.cancelled = True
                logger.warning(
                    f"{label}: cancelled after {result.batches} batches ({result.rows_deleted} rows)",
                    extra={"event": "batch_delete_cancelled", "rows_deleted": result.rows_deleted},
                )
                break

            try:
                deleted = self._store.execute(
                    statement,
                    {**params, "batch_size": self.batch_size},
                    timeout_seconds=MutationDefaults.NO_TIMEOUT,
                )
            except StoreConnectivityError as e:
                result.aborted = True
                result.connectivity_lost = True
                result.error = str(e)
                logger.error(f"{label}: store connection lost after {result.rows_deleted} rows: {e}")
                break
            except StoreError as e:
                result.aborted = True
                result.error = str(e)
                logger.error(f"{label}: batch failed after {result.rows_deleted} rows: {e}")
                break

            result.statements_executed += 1
            if deleted > 0:
                previous = result.rows_deleted
                result.batches += 1
                result.rows_deleted += deleted
                if result.rows_deleted // self.progress_every > previous // self.progress_every:
                    logger.info(
                        f"{label}: deleted {result.rows_deleted} rows so far",
                        extra={"event": "batch_delete_progress", "rows_deleted": result.rows_deleted,
                               "batch": result.batches},
                    )

            if deleted < self.batch_size:
                break

            # Event.wait doubles as the inter-batch pause and returns early on cancel
            if self._cancel.wait(self.batch_delay_seconds):
                result.cancelled = True
                logger.warning(f"{label}: cancelled after {result.batches} batches ({result.rows_deleted} rows)")
                break

        result.duration_seconds = round(time.time() - start, 2)
        logger.info(
            f"{label}: removed {result.rows_deleted} rows in {result.batches} batches "
            f"({result.duration_seconds}s)",
            extra={"event": "batch_delete_complete", "rows_deleted": result.rows_deleted,
                   "duration_ms": int(result.duration_seconds * 1000)},
        )
        return result

    def prune_supersession_edges(self, state: RevisionState) -> BatchDeleteResult:
        """Remove supersession edges recorded by revisions in the given state."""
        return self.delete_in_batches(
            statements.prune_supersession_batch(self._store.dialect),
            {"state": int(state)},
            label=f"supersession_{state.name.lower()}",
        )

    def prune_status_records(self, cutoff: datetime) -> BatchDeleteResult:
        """Remove status records of declined/superseded updates released before cutoff."""
        if cutoff.tzinfo is not None:
            cutoff = cutoff.astimezone(UTC).replace(tzinfo=None)
        return self.delete_in_batches(
            statements.prune_status_records_batch(self._store.dialect),
            {"cutoff": cutoff},
            label="status_records",
        )

    # -------------------------------------------------------------------------
    # Per-item operations
    # -------------------------------------------------------------------------

    def _run_item(self, item_id: str, action: Callable[[], str | None]) -> ItemOutcome:
        if self.cancelled:
            return ItemOutcome(item_id=item_id, ok=False, error_kind=ItemErrorKind.CANCELLED)
        try:
            detail = action()
            return ItemOutcome(item_id=item_id, ok=True, detail=detail)
        except (StoreConnectivityError, CatalogUnavailableError) as e:
            logger.error(f"Connection lost while processing {item_id}: {e}", extra={"update_id": item_id})
            return ItemOutcome(item_id=item_id, ok=False, error_kind=ItemErrorKind.CONNECTIVITY, detail=str(e))
        except Exception as e:
            logger.warning(f"Item {item_id} failed: {e}", extra={"update_id": item_id})
            return ItemOutcome(item_id=item_id, ok=False, error_kind=ItemErrorKind.ITEM_FAILED, detail=str(e))

    def _run_items(
        self,
        phase: PhaseResult,
        item_ids: list[str],
        action: Callable[[str], str | None],
        ok_key: str,
        failed_key: str,
        tracker: ProgressTracker | None = None,
    ) -> bool:
        """
        Apply action to each item. Returns False if the phase had to stop
        (cancel or connectivity loss).
        """
        phase.counts.setdefault(ok_key, 0)
        phase.counts.setdefault(failed_key, 0)

        for item_id in item_ids:
            outcome = self._run_item(item_id, lambda: action(item_id))

            if outcome.error_kind == ItemErrorKind.CANCELLED:
                phase.cancelled = True
                phase.warnings.append(f"Cancelled before {item_id}")
                return False
            if outcome.error_kind == ItemErrorKind.CONNECTIVITY:
                phase.fail(f"Store connection lost at {item_id}: {outcome.detail}", fatal=True)
                return False

            if outcome.ok:
                phase.counts[ok_key] += 1
                if outcome.detail:
                    phase.counts[outcome.detail] = phase.counts.get(outcome.detail, 0) + 1
            else:
                phase.counts[failed_key] += 1
                phase.errors.append(f"{item_id}: {outcome.detail}")

            if tracker:
                tracker.increment(success=outcome.ok)

        return True

    def apply_decisions(self, catalog: CatalogClient, decision: RetentionDecision, target_group: str) -> PhaseResult:
        """
        Decline and approve per the retention decision.

        Individual failures are counted; the phase still succeeds. A refused
        approval batch is reported for manual review and nothing is approved.
        """
        phase = PhaseResult(phase="decline_approve")

        keep_going = self._run_items(
            phase,
            [u.update_id for u in decision.to_decline],
            catalog.decline,
            ok_key="declined",
            failed_key="decline_failed",
        )
        if not keep_going:
            return phase

        if decision.approval_refused:
            phase.counts["approved"] = 0
            phase.counts["manual_review"] = len(decision.manual_review)
            phase.warnings.append(
                f"Auto-approve refused: {len(decision.manual_review)} candidates need manual review"
            )
        else:
            self._run_items(
                phase,
                [u.update_id for u in decision.to_approve],
                lambda update_id: catalog.approve(update_id, target_group),
                ok_key="approved",
                failed_key="approve_failed",
            )

        logger.info(
            f"Decisions applied: {phase.counts.get('declined', 0)} declined, "
            f"{phase.counts.get('approved', 0)} approved, "
            f"{phase.counts.get('decline_failed', 0) + phase.counts.get('approve_failed', 0)} failed",
            extra={"event": "decisions_applied"},
        )
        return phase

    def _purge_one(self, catalog: CatalogClient, update_id: str) -> str | None:
        local_id = catalog.resolve_local_id(update_id)
        if local_id is None:
            return "already_absent"
        catalog.purge_metadata(local_id)
        return None

    def purge_update_metadata(self, catalog: CatalogClient, update_ids: list[str]) -> PhaseResult:
        """
        Purge each update as an independent call, reporting progress per group.

        Must only run after supersession edges have been pruned.
        """
        phase = PhaseResult(phase="metadata_purge")
        tracker = ProgressTracker(total=len(update_ids), stage="metadata_purge", log_every=self.purge_group_size)

        self._run_items(
            phase,
            update_ids,
            lambda update_id: self._purge_one(catalog, update_id),
            ok_key="purged",
            failed_key="purge_failed",
            tracker=tracker,
        )
        tracker.finish()

        # "already_absent" items count as ok but were not purged here
        phase.counts["purged"] -= phase.counts.get("already_absent", 0)
        return phase

    # -------------------------------------------------------------------------
    # Deep cleanup
    # -------------------------------------------------------------------------

    def prune_all_supersession_edges(self) -> PhaseResult:
        """Prune edges for declined, then superseded revisions."""
        phase = PhaseResult(phase="supersession_prune")

        for state in (RevisionState.DECLINED, RevisionState.SUPERSEDED):
            result = self.prune_supersession_edges(state)
            phase.counts[f"{state.name.lower()}_edges_deleted"] = result.rows_deleted
            phase.counts[f"{state.name.lower()}_batches"] = result.batches

            if result.cancelled:
                phase.cancelled = True
                phase.warnings.append(f"Cancelled during {result.label}")
                break
            if result.aborted:
                phase.fail(f"{result.label}: {result.error}", fatal=result.connectivity_lost)
                break

        return phase

    def run_deep_cleanup(
        self,
        catalog: CatalogClient,
        purge_update_ids: list[str],
        status_cutoff: datetime | None = None,
    ) -> list[PhaseResult]:
        """
        Edge prune -> aged status prune -> metadata purge, strictly in order.

        Metadata purge never starts unless edge pruning ran to completion.
        """
        phases = []

        edges = self.prune_all_supersession_edges()
        phases.append(edges)
        edges_done = edges.success and not edges.cancelled

        if status_cutoff is not None:
            if not edges_done:
                phases.append(PhaseResult.skip("status_prune", "supersession prune did not complete"))
            else:
                status = PhaseResult(phase="status_prune")
                result = self.prune_status_records(status_cutoff)
                status.counts["status_records_deleted"] = result.rows_deleted
                status.counts["batches"] = result.batches
                if result.cancelled:
                    status.cancelled = True
                elif result.aborted:
                    status.fail(f"{result.label}: {result.error}", fatal=result.connectivity_lost)
                phases.append(status)
                edges_done = status.success and not status.cancelled

        if not edges_done:
            phases.append(PhaseResult.skip("metadata_purge", "earlier cleanup phase did not complete"))
        else:
            phases.append(self.purge_update_metadata(catalog, purge_update_ids))

        return phases
