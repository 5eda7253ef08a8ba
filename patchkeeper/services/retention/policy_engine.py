# patchkeeper/services/retention/policy_engine.py
"""
Retention policy engine.

Pure classification of catalog updates into three disjoint sets:
- to_decline: not declined, and expired, superseded, or older than the age cutoff
- to_approve: active, recent, allowed classification, not preview/beta,
  not yet approved for the target group
- to_purge_candidates: already declined

The engine never mutates anything. Callers apply the decisions.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from patchkeeper.catalog.base import CatalogClient
from patchkeeper.catalog.types import Update, UpdateClassification
from patchkeeper.constants import RetentionDefaults
from patchkeeper.errors import CatalogUnavailableError

logger = logging.getLogger(__name__)


DEFAULT_ALLOWED_CLASSIFICATIONS = frozenset(
    {
        UpdateClassification.CRITICAL.value,
        UpdateClassification.SECURITY.value,
        UpdateClassification.ROLLUP.value,
        UpdateClassification.SERVICE_PACK.value,
        UpdateClassification.DEFINITION.value,
    }
)


@dataclass(frozen=True)
class RetentionPolicy:
    """Policy parameters for one classification run."""

    age_months: int = RetentionDefaults.AGE_MONTHS
    allowed_classifications: frozenset[str] = DEFAULT_ALLOWED_CLASSIFICATIONS
    auto_approve_cap: int = RetentionDefaults.AUTO_APPROVE_CAP
    target_group: str = RetentionDefaults.TARGET_GROUP
    excluded_title_markers: tuple[str, ...] = RetentionDefaults.EXCLUDED_TITLE_MARKERS

    @classmethod
    def from_settings(cls, settings) -> "RetentionPolicy":
        return cls(
            age_months=settings.DECLINE_AGE_MONTHS,
            allowed_classifications=settings.allowed_classifications,
            auto_approve_cap=settings.AUTO_APPROVE_CAP,
            target_group=settings.APPROVAL_TARGET_GROUP,
            excluded_title_markers=settings.excluded_title_markers,
        )


@dataclass
class RetentionDecision:
    """Classification result for one catalog snapshot."""

    evaluated: int = 0
    cutoff: datetime | None = None
    to_decline: list[Update] = field(default_factory=list)
    to_approve: list[Update] = field(default_factory=list)
    to_purge_candidates: list[Update] = field(default_factory=list)
    approval_refused: bool = False
    manual_review: list[Update] = field(default_factory=list)
    # Per-trigger counters overlap (one update can match several); display only
    trigger_counts: dict = field(default_factory=dict)

    def summary(self) -> dict:
        return {
            "evaluated": self.evaluated,
            "to_decline": len(self.to_decline),
            "to_approve": len(self.to_approve),
            "to_purge_candidates": len(self.to_purge_candidates),
            "approval_refused": self.approval_refused,
            "manual_review": len(self.manual_review),
        }


def subtract_months(moment: datetime, months: int) -> datetime:
    """Calendar-aware month subtraction, clamping the day (Aug 31 - 6 months = Feb 28/29)."""
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _has_excluded_marker(title: str, markers: tuple[str, ...]) -> bool:
    lowered = title.lower()
    return any(marker in lowered for marker in markers)


def classify_updates(
    updates: list[Update],
    policy: RetentionPolicy,
    now: datetime | None = None,
) -> RetentionDecision:
    """
    Classify a catalog snapshot.

    Args:
        updates: Full current update set
        policy: Policy parameters
        now: Reference time (defaults to current UTC time)

    Returns:
        RetentionDecision with pairwise-disjoint result sets
    """
    now = now or datetime.now(UTC)
    cutoff = subtract_months(now, policy.age_months)
    decision = RetentionDecision(evaluated=len(updates), cutoff=cutoff)
    triggers = {"expired": 0, "superseded": 0, "aged": 0}

    seen: set[str] = set()
    approve_candidates: list[Update] = []

    for update in updates:
        if update.update_id in seen:
            continue
        seen.add(update.update_id)

        if update.is_declined:
            decision.to_purge_candidates.append(update)
            continue

        aged = update.creation_date < cutoff
        if update.is_expired:
            triggers["expired"] += 1
        if update.is_superseded:
            triggers["superseded"] += 1
        if aged:
            triggers["aged"] += 1

        if update.is_expired or update.is_superseded or aged:
            decision.to_decline.append(update)
            continue

        if (
            update.classification.value in policy.allowed_classifications
            and not _has_excluded_marker(update.title, policy.excluded_title_markers)
            and not update.is_approved_for(policy.target_group)
        ):
            approve_candidates.append(update)

    decision.trigger_counts = triggers

    if len(approve_candidates) > policy.auto_approve_cap:
        decision.approval_refused = True
        decision.manual_review = approve_candidates
        logger.warning(
            f"Auto-approve refused: {len(approve_candidates)} candidates exceed cap of "
            f"{policy.auto_approve_cap}; manual review required",
            extra={"event": "approve_refused"},
        )
    else:
        decision.to_approve = approve_candidates

    logger.info(
        f"Classified {decision.evaluated} updates: {len(decision.to_decline)} to decline, "
        f"{len(decision.to_approve)} to approve, {len(decision.to_purge_candidates)} purge candidates",
        extra={"event": "updates_classified"},
    )
    return decision


def evaluate_catalog(
    catalog: CatalogClient,
    policy: RetentionPolicy,
    now: datetime | None = None,
) -> RetentionDecision | None:
    """
    List the catalog and classify it.

    Returns None ("no data") when the listing cannot be retrieved; callers
    must skip dependent steps for the run rather than act on partial data.
    """
    try:
        updates = catalog.list_updates()
    except CatalogUnavailableError as e:
        logger.error(f"Catalog unavailable, skipping classification: {e}", extra={"event": "catalog_unavailable"})
        return None

    return classify_updates(updates, policy, now=now)
