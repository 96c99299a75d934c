"""PostgreSQL schema creation. Mirrors sqlite_migrations."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("boardmetrics.db")

SCHEMA_VERSION = 2

_STATEMENTS = (
    """CREATE TABLE IF NOT EXISTS schema_version (
        version   INTEGER NOT NULL,
        applied   TIMESTAMPTZ NOT NULL DEFAULT now()
    )""",
    """CREATE TABLE IF NOT EXISTS kv_store (
        key    TEXT PRIMARY KEY,
        value  TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS work_items (
        id                         INTEGER PRIMARY KEY,
        url                        TEXT,
        title                      TEXT,
        work_item_type             TEXT,
        state                      TEXT,
        iteration_path             TEXT,
        tags                       TEXT,
        assigned_to_display_name   TEXT,
        assigned_to_unique_name    TEXT,
        effort                     DOUBLE PRECISION,
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
    )""",
    "CREATE INDEX IF NOT EXISTS idx_work_items_state ON work_items(state, changed_date DESC)",
    "CREATE INDEX IF NOT EXISTS idx_work_items_assignee ON work_items(assigned_to_unique_name)",
    """CREATE TABLE IF NOT EXISTS work_item_revisions (
        id            BIGSERIAL PRIMARY KEY,
        work_item_id  INTEGER NOT NULL,
        rev           INTEGER NOT NULL,
        changed_date  TEXT,
        state         TEXT,
        due_date      TEXT,
        effort        DOUBLE PRECISION
    )""",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_revisions_item_rev ON work_item_revisions(work_item_id, rev)",
)


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _STATEMENTS:
                await conn.execute(statement)
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
            if current_version >= SCHEMA_VERSION:
                logger.info(f"Schema is up to date (version {current_version})")
                return
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
