"""Database schema creation and versioning.

All CREATE TABLE statements for the local work item mirror.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("boardmetrics.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Key/value store (sync watermark) ────────────────────────────
CREATE TABLE IF NOT EXISTS kv_store (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);

-- ── 2. Tracked work items ──────────────────────────────────────────
CREATE TABLE IF NOT EXISTS work_items (
    id                         INTEGER PRIMARY KEY,
    url                        TEXT,
    title                      TEXT,
    work_item_type             TEXT,
    state                      TEXT,
    iteration_path             TEXT,
    tags                       TEXT,
    assigned_to_display_name   TEXT,
    assigned_to_unique_name    TEXT,
    effort                     REAL,
    due_date                   TEXT,
    created_date               TEXT,
    changed_date               TEXT,
    start_date                 TEXT,
    in_progress_date           TEXT,
    done_date                  TEXT,
    due_date_set_date          TEXT,
    effective_due_date         TEXT,
    effective_due_date_source  TEXT,
    expected_days              INTEGER,
    forecast_due_date          TEXT,
    commitment_variance_days   INTEGER,
    forecast_variance_days     INTEGER,
    slack_days                 INTEGER,
    planning_lag_days          INTEGER,
    due_date_changed_count     INTEGER NOT NULL DEFAULT 0,
    total_slip_days            INTEGER NOT NULL DEFAULT 0,
    needs_attention            INTEGER NOT NULL DEFAULT 0,
    triage_reason              TEXT,
    last_flagged_at            TEXT,
    updated_at                 TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_items_state    ON work_items(state, changed_date DESC);
CREATE INDEX IF NOT EXISTS idx_work_items_assignee ON work_items(assigned_to_unique_name);
CREATE INDEX IF NOT EXISTS idx_work_items_flagged  ON work_items(needs_attention) WHERE needs_attention = 1;

-- ── 3. Revision history ────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS work_item_revisions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    work_item_id  INTEGER NOT NULL,
    rev           INTEGER NOT NULL,
    changed_date  TEXT,
    state         TEXT,
    due_date      TEXT,
    effort        REAL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_revisions_item_rev ON work_item_revisions(work_item_id, rev);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # v2: triage timestamp and in-progress entry date
    await _ensure_column(db, "work_items", "in_progress_date", "TEXT")
    await _ensure_column(db, "work_items", "last_flagged_at", "TEXT")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
