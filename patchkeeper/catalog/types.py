"""
Data types for the update catalog.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class UpdateClassification(str, Enum):
    """Catalog classification titles."""
    CRITICAL = "Critical Updates"
    SECURITY = "Security Updates"
    ROLLUP = "Update Rollups"
    SERVICE_PACK = "Service Packs"
    DEFINITION = "Definition Updates"
    FEATURE_PACK = "Feature Packs"
    TOOLS = "Tools"
    DRIVERS = "Drivers"
    UPGRADES = "Upgrades"
    UPDATES = "Updates"
    UNKNOWN = "Unknown"

    @classmethod
    def from_title(cls, title: str | None) -> "UpdateClassification":
        """Map a catalog classification title (case-insensitive) to the enum."""
        if not title:
            return cls.UNKNOWN
        normalized = title.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class Update:
    """
    A catalog update as seen by the retention policy.

    Attributes:
        update_id: Catalog identity (GUID string)
        title: Display title
        classification: Typed classification
        creation_date: Publisher release timestamp (UTC)
        is_declined / is_superseded / is_expired: Lifecycle flags
        approved_groups: Target groups that already hold an install approval
    """
    update_id: str
    title: str
    classification: UpdateClassification
    creation_date: datetime
    is_declined: bool = False
    is_superseded: bool = False
    is_expired: bool = False
    approved_groups: frozenset[str] = field(default_factory=frozenset)

    def is_approved_for(self, target_group: str) -> bool:
        return target_group.lower() in {g.lower() for g in self.approved_groups}
