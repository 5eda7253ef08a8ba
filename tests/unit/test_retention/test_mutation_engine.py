# tests/unit/test_retention/test_mutation_engine.py
"""
Tests for the batched mutation engine.

Chunked deletes run against the in-memory SQLite store; per-item loops
use a mocked catalog.
"""

import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest


def _engine(store, **kwargs):
    from patchkeeper.services.mutation import BatchedMutationEngine

    kwargs.setdefault("batch_size", 10)
    kwargs.setdefault("batch_delay_seconds", 0)
    return BatchedMutationEngine(store, **kwargs)


def _edge_count(store) -> int:
    return store.scalar("SELECT COUNT(*) FROM tbRevisionSupersedesUpdate")


def _decision(decline=(), approve=(), refused_review=()):
    from patchkeeper.services.retention import RetentionDecision

    decision = RetentionDecision(evaluated=len(decline) + len(approve) + len(refused_review))
    decision.to_decline = [MagicMock(update_id=i) for i in decline]
    decision.to_approve = [MagicMock(update_id=i) for i in approve]
    if refused_review:
        decision.approval_refused = True
        decision.manual_review = [MagicMock(update_id=i) for i in refused_review]
    return decision


@pytest.mark.store
class TestDeleteInBatches:
    """Chunked delete loop against SQLite."""

    def test_deletes_all_rows_in_bounded_batches(self, store, seed):
        """25 edges with batch size 10 -> 10, 10, 5."""
        from patchkeeper.models import RevisionState

        seed("declined-1", state=RevisionState.DECLINED, supersedes=tuple(f"old-{i}" for i in range(25)))

        result = _engine(store).prune_supersession_edges(RevisionState.DECLINED)

        assert result.rows_deleted == 25
        assert result.batches == 3
        assert result.statements_executed == 3
        assert result.completed
        assert _edge_count(store) == 0

    def test_exact_multiple_needs_one_empty_batch(self, store, seed):
        from patchkeeper.models import RevisionState

        seed("declined-1", state=RevisionState.DECLINED, supersedes=tuple(f"old-{i}" for i in range(20)))

        result = _engine(store).prune_supersession_edges(RevisionState.DECLINED)

        assert result.rows_deleted == 20
        assert result.batches == 2
        assert result.statements_executed == 3

    def test_only_matching_state_is_pruned(self, store, seed):
        from patchkeeper.models import RevisionState

        seed("declined-1", state=RevisionState.DECLINED, supersedes=("a", "b"))
        seed("active-1", state=RevisionState.ACTIVE, supersedes=("c", "d", "e"))

        result = _engine(store).prune_supersession_edges(RevisionState.DECLINED)

        assert result.rows_deleted == 2
        assert _edge_count(store) == 3

    def test_nothing_to_delete(self, store):
        from patchkeeper.models import RevisionState

        result = _engine(store).prune_supersession_edges(RevisionState.SUPERSEDED)

        assert result.rows_deleted == 0
        assert result.batches == 0
        assert result.statements_executed == 1
        assert result.label == "supersession_superseded"

    def test_cancel_between_batches_keeps_committed_work(self, store, seed):
        """Cancel after the second batch: 20 rows gone, 5 remain."""
        from patchkeeper.models import RevisionState

        seed("declined-1", state=RevisionState.DECLINED, supersedes=tuple(f"old-{i}" for i in range(25)))
        cancel = threading.Event()
        engine = _engine(store, cancel_event=cancel)

        real_execute = store.execute
        calls = []

        def execute_then_cancel(*args, **kwargs):
            rows = real_execute(*args, **kwargs)
            calls.append(rows)
            if len(calls) == 2:
                cancel.set()
            return rows

        store.execute = execute_then_cancel

        result = engine.prune_supersession_edges(RevisionState.DECLINED)

        assert result.cancelled == True
        assert result.rows_deleted == 20
        assert result.batches == 2
        assert not result.completed
        assert _edge_count(store) == 5

    def test_cancel_before_start_runs_nothing(self, store, seed):
        from patchkeeper.models import RevisionState

        seed("declined-1", state=RevisionState.DECLINED, supersedes=("a",))
        cancel = threading.Event()
        cancel.set()

        result = _engine(store, cancel_event=cancel).prune_supersession_edges(RevisionState.DECLINED)

        assert result.cancelled == True
        assert result.statements_executed == 0
        assert _edge_count(store) == 1

    def test_connectivity_loss_aborts(self):
        from patchkeeper.errors import StoreConnectivityError
        from patchkeeper.models import RevisionState

        store = MagicMock()
        store.dialect = "sqlite"
        store.execute.side_effect = [10, StoreConnectivityError("link failure")]

        result = _engine(store).prune_supersession_edges(RevisionState.DECLINED)

        assert result.aborted == True
        assert result.connectivity_lost == True
        assert result.rows_deleted == 10
        assert "link failure" in result.error

    def test_statement_failure_aborts_without_connectivity_flag(self):
        from patchkeeper.errors import StoreError
        from patchkeeper.models import RevisionState

        store = MagicMock()
        store.dialect = "sqlite"
        store.execute.side_effect = StoreError("deadlock victim")

        result = _engine(store).prune_supersession_edges(RevisionState.DECLINED)

        assert result.aborted == True
        assert result.connectivity_lost == False

    def test_runs_without_statement_timeout(self):
        from patchkeeper.models import RevisionState

        store = MagicMock()
        store.dialect = "sqlite"
        store.execute.return_value = 0

        _engine(store).prune_supersession_edges(RevisionState.DECLINED)

        _, kwargs = store.execute.call_args
        assert kwargs["timeout_seconds"] is None
        assert store.execute.call_args[0][1] == {"state": 2, "batch_size": 10}

    def test_logs_progress_when_crossing_threshold(self, caplog):
        import logging

        from patchkeeper.models import RevisionState

        store = MagicMock()
        store.dialect = "sqlite"
        store.execute.side_effect = [10, 10, 10, 3]

        with caplog.at_level(logging.INFO, logger="patchkeeper.services.mutation"):
            _engine(store, progress_every=15).prune_supersession_edges(RevisionState.DECLINED)

        progress = [r for r in caplog.records if getattr(r, "event", None) == "batch_delete_progress"]
        # 10 crosses nothing, 20 crosses 15, 30 crosses 30, 33 crosses nothing
        assert [r.rows_deleted for r in progress] == [20, 30]

    def test_rejects_non_positive_batch_size(self, store):
        with pytest.raises(ValueError):
            _engine(store, batch_size=0)


@pytest.mark.store
class TestPruneStatusRecords:
    """Aged status record pruning."""

    def test_removes_only_old_declined_and_superseded(self, store, seed):
        from patchkeeper.models import RevisionState

        seed("old-declined", days_old=400, state=RevisionState.DECLINED, status_targets=4)
        seed("old-superseded", days_old=400, state=RevisionState.SUPERSEDED, status_targets=3)
        seed("new-declined", days_old=5, state=RevisionState.DECLINED, status_targets=2)
        seed("old-active", days_old=400, state=RevisionState.ACTIVE, status_targets=6)

        cutoff = datetime.now(UTC) - timedelta(days=365)
        result = _engine(store, batch_size=2).prune_status_records(cutoff)

        assert result.rows_deleted == 7
        assert result.completed
        assert store.scalar("SELECT COUNT(*) FROM tbUpdateStatusPerComputer") == 8


class TestApplyDecisions:
    """Decline/approve loops."""

    def test_counts_success_and_continues_on_item_errors(self, store):
        from patchkeeper.errors import CatalogError

        catalog = MagicMock()
        catalog.decline.side_effect = [None, CatalogError("locked"), None]

        phase = _engine(store).apply_decisions(catalog, _decision(decline=["a", "b", "c"], approve=["d"]), "All Computers")

        assert phase.success
        assert phase.counts["declined"] == 2
        assert phase.counts["decline_failed"] == 1
        assert phase.counts["approved"] == 1
        assert phase.errors == ["b: locked"]
        catalog.approve.assert_called_once_with("d", "All Computers")

    def test_refused_batch_approves_nothing(self, store):
        catalog = MagicMock()

        phase = _engine(store).apply_decisions(catalog, _decision(refused_review=["x", "y"]), "All Computers")

        catalog.approve.assert_not_called()
        assert phase.counts["approved"] == 0
        assert phase.counts["manual_review"] == 2
        assert phase.warnings

    def test_connectivity_loss_is_fatal_and_stops(self, store):
        from patchkeeper.errors import StoreConnectivityError

        catalog = MagicMock()
        catalog.decline.side_effect = [None, StoreConnectivityError("gone")]

        phase = _engine(store).apply_decisions(catalog, _decision(decline=["a", "b", "c"], approve=["d"]), "All Computers")

        assert phase.fatal == True
        assert phase.success == False
        assert catalog.decline.call_count == 2
        catalog.approve.assert_not_called()

    def test_cancel_stops_before_next_item(self, store):
        cancel = threading.Event()
        catalog = MagicMock()
        catalog.decline.side_effect = lambda update_id: cancel.set()

        phase = _engine(store, cancel_event=cancel).apply_decisions(
            catalog, _decision(decline=["a", "b"]), "All Computers"
        )

        assert phase.cancelled == True
        assert phase.counts["declined"] == 1
        assert catalog.decline.call_count == 1


class TestPurgeUpdateMetadata:
    """Per-update metadata purge."""

    def test_continues_after_failure(self, store):
        from patchkeeper.errors import CatalogError

        catalog = MagicMock()
        catalog.resolve_local_id.side_effect = [1, 2, 3]
        catalog.purge_metadata.side_effect = [None, CatalogError("constraint"), None]

        phase = _engine(store).purge_update_metadata(catalog, ["a", "b", "c"])

        assert phase.success
        assert phase.counts["purged"] == 2
        assert phase.counts["purge_failed"] == 1
        assert catalog.purge_metadata.call_count == 3

    def test_absent_update_is_not_an_error(self, store):
        catalog = MagicMock()
        catalog.resolve_local_id.side_effect = [None, 7]

        phase = _engine(store).purge_update_metadata(catalog, ["gone", "here"])

        assert phase.counts["purged"] == 1
        assert phase.counts["already_absent"] == 1
        assert phase.counts["purge_failed"] == 0
        catalog.purge_metadata.assert_called_once_with(7)


class TestRunDeepCleanup:
    """Ordering of the deep cleanup phases."""

    def test_purge_skipped_when_edge_prune_aborts(self):
        from patchkeeper.errors import StoreError

        store = MagicMock()
        store.dialect = "sqlite"
        store.execute.side_effect = StoreError("timeout")
        catalog = MagicMock()

        phases = _engine(store).run_deep_cleanup(catalog, ["a", "b"])

        assert [p.phase for p in phases] == ["supersession_prune", "metadata_purge"]
        assert phases[0].success == False
        assert phases[1].skipped == True
        catalog.purge_metadata.assert_not_called()

    def test_edges_pruned_before_metadata_purge(self):
        order = []
        store = MagicMock()
        store.dialect = "sqlite"
        store.execute.side_effect = lambda *a, **k: order.append("edges") or 0
        catalog = MagicMock()
        catalog.resolve_local_id.return_value = 1
        catalog.purge_metadata.side_effect = lambda local_id: order.append("purge")

        phases = _engine(store).run_deep_cleanup(catalog, ["a"])

        assert order == ["edges", "edges", "purge"]
        assert all(p.success for p in phases)

    def test_status_prune_runs_between_edges_and_purge(self, store, seed):
        from patchkeeper.catalog.sql_catalog import SqlCatalogClient
        from patchkeeper.models import RevisionState

        seed("declined-old", days_old=400, state=RevisionState.DECLINED, supersedes=("x", "y"), status_targets=3)
        seed("superseded", days_old=10, state=RevisionState.SUPERSEDED, supersedes=("z",))
        catalog = SqlCatalogClient(store, retry_wait_seconds=0)
        cutoff = datetime.now(UTC) - timedelta(days=365)

        phases = _engine(store).run_deep_cleanup(catalog, ["declined-old"], status_cutoff=cutoff)

        assert [p.phase for p in phases] == ["supersession_prune", "status_prune", "metadata_purge"]
        assert phases[0].counts["declined_edges_deleted"] == 2
        assert phases[0].counts["superseded_edges_deleted"] == 1
        assert phases[1].counts["status_records_deleted"] == 3
        assert phases[2].counts["purged"] == 1
        assert store.scalar("SELECT COUNT(*) FROM tbUpdate") == 1
