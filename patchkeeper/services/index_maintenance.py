# patchkeeper/services/index_maintenance.py
"""
Index maintenance planner.

Classifies each index by fragmentation and size:
- fragmentation <= floor or page_count <= min_page_count: skip (no-op)
- fragmentation > rebuild_threshold: rebuild
- otherwise: reorganize

Execution is a best-effort sweep: one failing index does not block the
rest. Statistics are refreshed at the end whether or not anything was
rebuilt.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from patchkeeper.constants import IndexDefaults, MutationDefaults
from patchkeeper.errors import StoreConnectivityError, StoreError
from patchkeeper.services.results import PhaseResult
from patchkeeper.store import StoreClient
from patchkeeper.store import statements

logger = logging.getLogger(__name__)


class IndexAction(str, Enum):
    REBUILD = "rebuild"
    REORGANIZE = "reorganize"
    SKIP = "skip"


@dataclass(frozen=True)
class IndexStat:
    """Fragmentation snapshot of one index."""

    table_name: str
    index_name: str
    fragmentation_percent: float
    page_count: int

    @classmethod
    def from_row(cls, row: dict) -> "IndexStat":
        return cls(
            table_name=str(row["table_name"]),
            index_name=str(row["index_name"]),
            fragmentation_percent=float(row["fragmentation_percent"] or 0.0),
            page_count=int(row["page_count"] or 0),
        )


@dataclass
class IndexPlan:
    rebuild: list[IndexStat] = field(default_factory=list)
    reorganize: list[IndexStat] = field(default_factory=list)
    skipped: list[IndexStat] = field(default_factory=list)

    @property
    def actionable(self) -> list[tuple[IndexAction, IndexStat]]:
        """Rebuilds and reorganizes, largest index first."""
        items = [(IndexAction.REBUILD, s) for s in self.rebuild]
        items += [(IndexAction.REORGANIZE, s) for s in self.reorganize]
        return sorted(items, key=lambda item: item[1].page_count, reverse=True)


def classify_index(
    stat: IndexStat,
    floor: float = IndexDefaults.FRAGMENTATION_FLOOR,
    rebuild_threshold: float = IndexDefaults.REBUILD_THRESHOLD,
    min_page_count: int = IndexDefaults.MIN_PAGE_COUNT,
) -> IndexAction:
    if stat.table_name.lower().startswith(IndexDefaults.SKIP_TABLE_PREFIX):
        return IndexAction.SKIP
    if stat.fragmentation_percent <= floor or stat.page_count <= min_page_count:
        return IndexAction.SKIP
    if stat.fragmentation_percent > rebuild_threshold:
        return IndexAction.REBUILD
    return IndexAction.REORGANIZE


def plan_index_maintenance(
    stats: list[IndexStat],
    floor: float = IndexDefaults.FRAGMENTATION_FLOOR,
    rebuild_threshold: float = IndexDefaults.REBUILD_THRESHOLD,
    min_page_count: int = IndexDefaults.MIN_PAGE_COUNT,
) -> IndexPlan:
    plan = IndexPlan()
    for stat in sorted(stats, key=lambda s: s.page_count, reverse=True):
        action = classify_index(stat, floor, rebuild_threshold, min_page_count)
        if action == IndexAction.REBUILD:
            plan.rebuild.append(stat)
        elif action == IndexAction.REORGANIZE:
            plan.reorganize.append(stat)
        else:
            plan.skipped.append(stat)
    return plan


class IndexMaintenancePlanner:
    """
    Inspects index fragmentation and issues rebuild/reorganize statements.

    Usage:
        planner = IndexMaintenancePlanner(store)
        phase = planner.run()
    """

    def __init__(
        self,
        store: StoreClient,
        floor: float = IndexDefaults.FRAGMENTATION_FLOOR,
        rebuild_threshold: float = IndexDefaults.REBUILD_THRESHOLD,
        min_page_count: int = IndexDefaults.MIN_PAGE_COUNT,
        cancel_event: threading.Event | None = None,
    ):
        self._store = store
        self.floor = floor
        self.rebuild_threshold = rebuild_threshold
        self.min_page_count = min_page_count
        self._cancel = cancel_event or threading.Event()

    @classmethod
    def from_settings(cls, store: StoreClient, settings, cancel_event: threading.Event | None = None):
        return cls(
            store,
            floor=settings.INDEX_FRAGMENTATION_FLOOR,
            rebuild_threshold=settings.INDEX_REBUILD_THRESHOLD,
            min_page_count=settings.INDEX_MIN_PAGE_COUNT,
            cancel_event=cancel_event,
        )

    def plan(self) -> IndexPlan:
        rows = self._store.list_index_stats()
        return plan_index_maintenance(
            [IndexStat.from_row(row) for row in rows],
            floor=self.floor,
            rebuild_threshold=self.rebuild_threshold,
            min_page_count=self.min_page_count,
        )

    def _statement_for(self, action: IndexAction, stat: IndexStat):
        if action == IndexAction.REBUILD:
            return statements.rebuild_index(self._store.dialect, stat.table_name, stat.index_name)
        return statements.reorganize_index(self._store.dialect, stat.table_name, stat.index_name)

    def run(self) -> PhaseResult:
        phase = PhaseResult(phase="index_maintenance")
        phase.counts.update({"rebuilt": 0, "reorganized": 0, "skipped": 0, "failed": 0})

        try:
            plan = self.plan()
        except StoreConnectivityError as e:
            phase.fail(f"Could not read index statistics: {e}", fatal=True)
            return phase
        except StoreError as e:
            # Still refresh statistics below
            phase.warnings.append(f"Could not read index statistics: {e}")
            plan = IndexPlan()

        phase.counts["skipped"] = len(plan.skipped)

        for action, stat in plan.actionable:
            if self._cancel.is_set():
                phase.cancelled = True
                phase.warnings.append(f"Cancelled before {stat.table_name}.{stat.index_name}")
                return phase

            start = time.time()
            try:
                self._store.execute(self._statement_for(action, stat), timeout_seconds=MutationDefaults.NO_TIMEOUT)
            except StoreConnectivityError as e:
                phase.fail(f"Store connection lost at {stat.table_name}.{stat.index_name}: {e}", fatal=True)
                return phase
            except StoreError as e:
                phase.counts["failed"] += 1
                phase.warnings.append(f"{action.value} {stat.table_name}.{stat.index_name} failed: {e}")
                logger.warning(
                    f"Index {action.value} failed for {stat.table_name}.{stat.index_name}: {e}",
                    extra={"table_name": stat.table_name, "index_name": stat.index_name},
                )
                continue

            done = "rebuilt" if action == IndexAction.REBUILD else "reorganized"
            phase.counts[done] += 1
            logger.info(
                f"{done.capitalize()} {stat.table_name}.{stat.index_name} "
                f"({stat.fragmentation_percent:.1f}% fragmented, {stat.page_count} pages)",
                extra={
                    "event": f"index_{action.value}",
                    "table_name": stat.table_name,
                    "index_name": stat.index_name,
                    "duration_ms": int((time.time() - start) * 1000),
                },
            )

        self._refresh_statistics(phase)
        return phase

    def _refresh_statistics(self, phase: PhaseResult) -> None:
        try:
            self._store.execute(statements.update_statistics(self._store.dialect),
                                timeout_seconds=MutationDefaults.NO_TIMEOUT)
            phase.counts["statistics_refreshed"] = 1
            logger.info("Statistics refreshed", extra={"event": "statistics_refreshed"})
        except StoreConnectivityError as e:
            phase.fail(f"Store connection lost during statistics refresh: {e}", fatal=True)
        except StoreError as e:
            phase.counts["statistics_refreshed"] = 0
            phase.warnings.append(f"Statistics refresh failed: {e}")
            logger.warning(f"Statistics refresh failed: {e}")
