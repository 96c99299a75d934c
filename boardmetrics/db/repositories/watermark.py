"""SQLite implementation of the sync watermark store."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import aiosqlite

from boardmetrics import config
from boardmetrics.date_utils import parse_datetime, to_utc

WATERMARK_KEY = "sinceUtc"


def default_watermark(now: datetime | None = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current - timedelta(days=config.INITIAL_LOOKBACK_DAYS)


def parse_watermark(raw: str | None, now: datetime | None = None) -> datetime:
    parsed = parse_datetime(raw)
    if parsed is None:
        return default_watermark(now)
    return to_utc(parsed)


def format_watermark(value: datetime) -> str:
    return to_utc(value).isoformat()


class SqliteWatermarkRepository:
    """Single 'processed up to' cursor stored in kv_store."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self) -> datetime:
        async with self.db.execute(
            "SELECT value FROM kv_store WHERE key = ?", (WATERMARK_KEY,)
        ) as cur:
            row = await cur.fetchone()
        return parse_watermark(row[0] if row else None)

    async def get_raw(self) -> str | None:
        async with self.db.execute(
            "SELECT value FROM kv_store WHERE key = ?", (WATERMARK_KEY,)
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def set(self, value: datetime) -> None:
        await self.db.execute(
            """INSERT INTO kv_store (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
            (WATERMARK_KEY, format_watermark(value)),
        )
        await self.db.commit()
