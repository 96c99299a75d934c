"""PostgreSQL implementation of the sync watermark store."""
from __future__ import annotations

from datetime import datetime

import asyncpg

from boardmetrics.db.repositories.watermark import WATERMARK_KEY, format_watermark, parse_watermark


class PostgresWatermarkRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get(self) -> datetime:
        return parse_watermark(await self.get_raw())

    async def get_raw(self) -> str | None:
        return await self.db.fetchval("SELECT value FROM kv_store WHERE key = $1", WATERMARK_KEY)

    async def set(self, value: datetime) -> None:
        await self.db.execute(
            """INSERT INTO kv_store (key, value) VALUES ($1, $2)
               ON CONFLICT(key) DO UPDATE SET value=EXCLUDED.value""",
            WATERMARK_KEY,
            format_watermark(value),
        )
