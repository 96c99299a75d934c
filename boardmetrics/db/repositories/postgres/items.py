"""PostgreSQL implementation of WorkItemRepository."""
from __future__ import annotations

import asyncpg

from boardmetrics.db.repositories.items import ITEM_COLUMNS, _update_clause


class PostgresWorkItemRepository:
    """PostgreSQL-backed tracked work item storage."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(self, item: dict) -> None:
        placeholders = ", ".join(f"${i}" for i in range(1, len(ITEM_COLUMNS) + 1))
        query = f"""
            INSERT INTO work_items ({", ".join(ITEM_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET
                {_update_clause("EXCLUDED", "work_items")}
        """
        await self.db.execute(query, *(item.get(column) for column in ITEM_COLUMNS))

    async def commit(self) -> None:
        # Pool statements autocommit.
        return None

    async def rollback(self) -> None:
        return None

    async def get_by_id(self, item_id: int) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM work_items WHERE id = $1", item_id)
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
            params.append(state)
            clauses.append(f"LOWER(state) = LOWER(${len(params)})")
        if assignee:
            params.append(assignee)
            clauses.append(f"LOWER(assigned_to_unique_name) = LOWER(${len(params)})")
        if flagged is not None:
            params.append(1 if flagged else 0)
            clauses.append(f"needs_attention = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self.db.fetch(
            f"SELECT * FROM work_items {where} ORDER BY changed_date DESC NULLS LAST, id DESC LIMIT ${len(params)}",
            *params,
        )
        return [dict(r) for r in rows]

    async def count(self) -> int:
        return int(await self.db.fetchval("SELECT COUNT(*) FROM work_items") or 0)
