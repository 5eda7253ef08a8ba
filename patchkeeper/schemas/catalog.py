# patchkeeper/schemas/catalog.py
"""
Boundary validation for raw catalog records.

Catalog listings arrive as loosely typed mappings (store rows or API
payloads). They are validated here once and converted into Update
instances; nothing past this point sees the raw shape.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from patchkeeper.catalog.types import Update, UpdateClassification


class UpdateRecord(BaseModel):
    """One catalog row, as returned by the catalog service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    update_id: str = Field(..., alias="UpdateID", min_length=1)
    title: str = Field(default="", alias="Title")
    classification: str | None = Field(default=None, alias="Classification")
    creation_date: datetime = Field(..., alias="CreationDate")
    is_declined: bool = Field(default=False, alias="IsDeclined")
    is_superseded: bool = Field(default=False, alias="IsSuperseded")
    is_expired: bool = Field(default=False, alias="IsExpired")
    approved_groups: list[str] = Field(default_factory=list, alias="ApprovedGroups")

    @field_validator("update_id")
    @classmethod
    def normalize_update_id(cls, v: str) -> str:
        return v.strip()

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v):
        return v or ""

    @field_validator("creation_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Store timestamps are naive UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @field_validator("approved_groups", mode="before")
    @classmethod
    def split_groups(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [g.strip() for g in v.split(",") if g.strip()]
        return v

    def to_update(self) -> Update:
        return Update(
            update_id=self.update_id,
            title=self.title,
            classification=UpdateClassification.from_title(self.classification),
            creation_date=self.creation_date,
            is_declined=self.is_declined,
            is_superseded=self.is_superseded,
            is_expired=self.is_expired,
            approved_groups=frozenset(self.approved_groups),
        )
