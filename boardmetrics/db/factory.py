"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from boardmetrics.db.repositories.items import SqliteWorkItemRepository
from boardmetrics.db.repositories.revisions import SqliteRevisionRepository
from boardmetrics.db.repositories.watermark import SqliteWatermarkRepository


def get_work_item_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteWorkItemRepository(db)
    from boardmetrics.db.repositories.postgres.items import PostgresWorkItemRepository
    return PostgresWorkItemRepository(db)


def get_revision_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteRevisionRepository(db)
    from boardmetrics.db.repositories.postgres.revisions import PostgresRevisionRepository
    return PostgresRevisionRepository(db)


def get_watermark_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteWatermarkRepository(db)
    from boardmetrics.db.repositories.postgres.watermark import PostgresWatermarkRepository
    return PostgresWatermarkRepository(db)
