"""Source collaborator contract and the record shapes it produces."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol, Sequence

from boardmetrics.date_utils import parse_datetime

# Upper bound on ids per snapshot batch request.
MAX_BATCH_IDS = 200


@dataclass(frozen=True)
class Identity:
    display_name: str | None
    unique_name: str | None


@dataclass(frozen=True)
class RevisionRecord:
    """One numbered revision of an item's scheduling-relevant fields."""

    item_id: int
    rev: int
    changed_date: datetime | None
    state: str | None = None
    due_date: datetime | None = None
    effort: float | None = None

    def same_fields(self, other: "RevisionRecord") -> bool:
        return (
            self.changed_date == other.changed_date
            and self.state == other.state
            and self.due_date == other.due_date
            and self.effort == other.effort
        )


@dataclass
class WorkItemSnapshot:
    """Current field values of an item as returned by a batch fetch.

    Accessors never raise: a missing or malformed field reads as None.
    """

    id: int
    url: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    def get_string(self, name: str) -> str | None:
        value = self.fields.get(name)
        if value is None:
            return None
        return str(value)

    def get_float(self, name: str) -> float | None:
        value = self.fields.get(name)
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value))
        except ValueError:
            return None

    def get_date(self, name: str) -> datetime | None:
        value = self.fields.get(name)
        if not isinstance(value, (str, datetime)):
            return None
        return parse_datetime(value)

    def get_identity(self, name: str) -> Identity | None:
        value = self.fields.get(name)
        if not isinstance(value, dict):
            return None
        display = value.get("displayName")
        unique = value.get("uniqueName")
        return Identity(
            display_name=str(display) if display is not None else None,
            unique_name=str(unique) if unique is not None else None,
        )


class TrackerSource(Protocol):
    """Narrow interface the sync engine needs from the external tracker."""

    @property
    def is_configured(self) -> bool: ...

    async def query_changed_ids(self, since: date) -> list[int]: ...

    async def fetch_snapshot_batch(
        self, ids: Sequence[int], extra_fields: Sequence[str] | None = None,
    ) -> list[WorkItemSnapshot]: ...

    async def fetch_revision_history(self, item_id: int) -> list[RevisionRecord]: ...

    def resolve_identity(self, snapshot: WorkItemSnapshot, field_ref: str) -> Identity | None: ...
