"""Database schema definition.

``_SCHEMA`` is the source of truth for table definitions; ``CREATE TABLE
IF NOT EXISTS`` handles brand-new databases. ``_ensure_columns`` adds
columns that were introduced after a database was first created.
"""

from __future__ import annotations

import re

import aiosqlite

from wakeline.logger import logger

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS cron_jobs (
    id TEXT PRIMARY KEY,
    name TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL,
    schedule TEXT NOT NULL,
    session_target TEXT NOT NULL,
    wake_mode TEXT NOT NULL DEFAULT 'nextHeartbeat',
    payload TEXT NOT NULL,
    isolation TEXT,
    next_run_at_ms INTEGER,
    running_at_ms INTEGER,
    last_run_at_ms INTEGER,
    last_status TEXT,
    last_error TEXT,
    last_duration_ms INTEGER
);

CREATE TABLE IF NOT EXISTS cron_run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ts INTEGER NOT NULL,
    job_id TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT,
    error TEXT,
    summary TEXT,
    run_at_ms INTEGER,
    duration_ms INTEGER,
    next_run_at_ms INTEGER
);
"""

# Indexes may reference migrated columns, so they are created after _ensure_columns.
_INDEXES = """\
CREATE INDEX IF NOT EXISTS idx_cron_jobs_next_run ON cron_jobs(enabled, next_run_at_ms);
CREATE INDEX IF NOT EXISTS idx_cron_run_logs ON cron_run_logs(job_id, ts);
"""

_TABLE_RE = re.compile(r"CREATE TABLE IF NOT EXISTS (\w+) \((.*?)\n\);", re.DOTALL)


def _schema_columns() -> dict[str, list[tuple[str, str]]]:
    """Parse ``_SCHEMA`` into {table: [(column, definition), ...]}."""
    tables: dict[str, list[tuple[str, str]]] = {}
    for table, body in _TABLE_RE.findall(_SCHEMA):
        cols = []
        for line in body.strip().splitlines():
            col_def = line.strip().rstrip(",")
            if not col_def or col_def.split()[0].isupper():
                continue
            cols.append((col_def.split()[0], col_def))
        tables[table] = cols
    return tables


async def _ensure_columns(database: aiosqlite.Connection) -> None:
    for table, columns in _schema_columns().items():
        cursor = await database.execute(f"PRAGMA table_info({table})")
        existing = {row[1] for row in await cursor.fetchall()}
        for col_name, col_def in columns:
            if col_name not in existing:
                # ALTER TABLE can't add PRIMARY KEY / NOT NULL without default
                safe_def = col_def.replace("PRIMARY KEY", "").replace("NOT NULL", "")
                await database.execute(f"ALTER TABLE {table} ADD COLUMN {safe_def}")
                logger.info("Added missing column", table=table, column=col_name)
    await database.commit()


async def create_schema(database: aiosqlite.Connection) -> None:
    """Apply schema DDL and bring older databases up to date."""
    await database.executescript(_SCHEMA)
    await _ensure_columns(database)
    await database.executescript(_INDEXES)
