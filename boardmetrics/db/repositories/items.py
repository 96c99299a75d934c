"""SQLite implementation of WorkItemRepository."""
from __future__ import annotations

import aiosqlite

ITEM_COLUMNS = (
    "id", "url", "title", "work_item_type", "state",
    "iteration_path", "tags",
    "assigned_to_display_name", "assigned_to_unique_name",
    "effort", "due_date", "created_date", "changed_date",
    "start_date", "in_progress_date", "done_date", "due_date_set_date",
    "effective_due_date", "effective_due_date_source",
    "expected_days", "forecast_due_date",
    "commitment_variance_days", "forecast_variance_days",
    "slack_days", "planning_lag_days",
    "due_date_changed_count", "total_slip_days",
    "needs_attention", "triage_reason", "last_flagged_at",
    "updated_at",
)

# Snapshot timestamps keep the stored value when the tracker omits them.
_KEEP_PREVIOUS = {"created_date", "changed_date"}


def _update_clause(excluded: str, table: str) -> str:
    parts = []
    for column in ITEM_COLUMNS:
        if column == "id":
            continue
        if column in _KEEP_PREVIOUS:
            parts.append(f"{column}=COALESCE({excluded}.{column}, {table}.{column})")
        else:
            parts.append(f"{column}={excluded}.{column}")
    return ",\n                ".join(parts)


class SqliteWorkItemRepository:
    """SQLite-backed tracked work item storage.

    Writes are not committed here; the sync engine commits once per chunk.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, item: dict) -> None:
        placeholders = ", ".join("?" for _ in ITEM_COLUMNS)
        await self.db.execute(
            f"""INSERT INTO work_items ({", ".join(ITEM_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET
                {_update_clause("excluded", "work_items")}
            """,
            tuple(item.get(column) for column in ITEM_COLUMNS),
        )

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def get_by_id(self, item_id: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM work_items WHERE id = ?", (item_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_items(
        self,
        state: str | None = None,
        assignee: str | None = None,
        flagged: bool | None = None,
        limit: int = 200,
    ) -> list[dict]:
        clauses: list[str] = []
        params: list = []
        if state:
            clauses.append("LOWER(state) = LOWER(?)")
            params.append(state)
        if assignee:
            clauses.append("LOWER(assigned_to_unique_name) = LOWER(?)")
            params.append(assignee)
        if flagged is not None:
            clauses.append("needs_attention = ?")
            params.append(1 if flagged else 0)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with self.db.execute(
            f"SELECT * FROM work_items {where} ORDER BY changed_date DESC, id DESC LIMIT ?",
            tuple(params),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM work_items") as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0
