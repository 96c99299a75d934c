"""SQLite implementation of RevisionRepository."""
from __future__ import annotations

from typing import Any, Iterable, Mapping

import aiosqlite

from boardmetrics.date_utils import format_datetime, parse_datetime
from boardmetrics.sources.base import RevisionRecord


def row_to_revision(row: Mapping[str, Any]) -> RevisionRecord:
    effort = row["effort"]
    return RevisionRecord(
        item_id=int(row["work_item_id"]),
        rev=int(row["rev"]),
        changed_date=parse_datetime(row["changed_date"]),
        state=row["state"],
        due_date=parse_datetime(row["due_date"]),
        effort=float(effort) if effort is not None else None,
    )


def revision_params(revision: RevisionRecord) -> tuple:
    return (
        revision.item_id,
        revision.rev,
        format_datetime(revision.changed_date),
        revision.state,
        format_datetime(revision.due_date),
        revision.effort,
    )


class SqliteRevisionRepository:
    """Per-item revision history keyed by (work_item_id, rev)."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_for_item(self, item_id: int) -> list[RevisionRecord]:
        async with self.db.execute(
            "SELECT * FROM work_item_revisions WHERE work_item_id = ? ORDER BY rev",
            (item_id,),
        ) as cur:
            return [row_to_revision(r) for r in await cur.fetchall()]

    async def upsert_many(self, revisions: Iterable[RevisionRecord]) -> int:
        rows = [revision_params(r) for r in revisions]
        if not rows:
            return 0
        await self.db.executemany(
            """INSERT INTO work_item_revisions (work_item_id, rev, changed_date, state, due_date, effort)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(work_item_id, rev) DO UPDATE SET
                 changed_date=excluded.changed_date, state=excluded.state,
                 due_date=excluded.due_date, effort=excluded.effort""",
            rows,
        )
        return len(rows)
