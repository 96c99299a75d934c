"""Process-wide database handle.

SQLite (WAL) by default; ``BOARDMETRICS_DB_BACKEND=postgres`` switches to an
asyncpg pool. Callers pass whatever comes back to ``db.factory``.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import aiosqlite
import asyncpg

from boardmetrics import config

logger = logging.getLogger("boardmetrics.db")

DbConnection = Union[aiosqlite.Connection, Any]  # Any covers asyncpg.Pool

_connection: DbConnection | None = None


async def open_sqlite(path: str | Path) -> aiosqlite.Connection:
    """Open a work item store at ``path``, creating parent directories."""
    db_path = Path(path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute(f"PRAGMA busy_timeout={max(0, int(config.DB_BUSY_TIMEOUT_MS))}")
    return conn


async def get_connection() -> DbConnection:
    """Return the shared connection (or pool), opening it on first use."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        logger.info("Connecting to PostgreSQL")
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection

    _connection = await open_sqlite(config.DB_PATH)
    logger.info("Work item store opened: %s", config.DB_PATH)
    return _connection


async def close_connection() -> None:
    global _connection
    if _connection is None:
        return
    conn, _connection = _connection, None
    await conn.close()  # asyncpg Pool has close() too
    logger.info("Database connection closed")
