# patchkeeper/services/results.py
"""
Structured results shared by maintenance services.

Phases report a PhaseResult instead of raising, so the run orchestrator
can decide which later phases are still safe to attempt.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum


class ItemErrorKind(str, Enum):
    """Why a single unit of work did not complete."""
    ITEM_FAILED = "item_failed"      # log, count, continue
    CONNECTIVITY = "connectivity"    # abort the phase
    CANCELLED = "cancelled"          # operator cancel observed


@dataclass
class ItemOutcome:
    """Result of one per-item operation (decline, approve, purge, copy)."""

    item_id: str
    ok: bool
    error_kind: ItemErrorKind | None = None
    detail: str | None = None


@dataclass
class PhaseResult:
    """Result of one maintenance phase."""

    phase: str
    success: bool = True
    counts: dict = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False
    fatal: bool = False            # store connectivity lost; later store phases must not run
    skipped: bool = False
    skip_reason: str | None = None

    @classmethod
    def skip(cls, phase: str, reason: str) -> "PhaseResult":
        return cls(phase=phase, success=True, skipped=True, skip_reason=reason)

    def fail(self, message: str, fatal: bool = False) -> None:
        self.success = False
        self.errors.append(message)
        if fatal:
            self.fatal = True

    def to_dict(self) -> dict:
        return asdict(self)
