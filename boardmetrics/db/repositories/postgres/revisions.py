"""PostgreSQL implementation of RevisionRepository."""
from __future__ import annotations

from typing import Iterable

import asyncpg

from boardmetrics.db.repositories.revisions import revision_params, row_to_revision
from boardmetrics.sources.base import RevisionRecord


class PostgresRevisionRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def list_for_item(self, item_id: int) -> list[RevisionRecord]:
        rows = await self.db.fetch(
            "SELECT * FROM work_item_revisions WHERE work_item_id = $1 ORDER BY rev",
            item_id,
        )
        return [row_to_revision(r) for r in rows]

    async def upsert_many(self, revisions: Iterable[RevisionRecord]) -> int:
        rows = [revision_params(r) for r in revisions]
        if not rows:
            return 0
        await self.db.executemany(
            """INSERT INTO work_item_revisions (work_item_id, rev, changed_date, state, due_date, effort)
               VALUES ($1, $2, $3, $4, $5, $6)
               ON CONFLICT(work_item_id, rev) DO UPDATE SET
                 changed_date=EXCLUDED.changed_date, state=EXCLUDED.state,
                 due_date=EXCLUDED.due_date, effort=EXCLUDED.effort""",
            rows,
        )
        return len(rows)
