"""Database connection and write utilities.

Single module-level connection, initialized by init_database().
Schema definition lives in :mod:`schema`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from wakeline.config import get_settings
from wakeline.state.schema import create_schema

_db: aiosqlite.Connection | None = None

# Shared write lock for multi-statement transactions. The single aiosqlite
# connection is shared by every coroutine, and sqlite3's implicit
# transactions are per connection: two coroutines whose DML interleaves at
# await points share one transaction, so a rollback from one undoes the
# other's uncommitted work.
_write_lock: asyncio.Lock | None = None


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Acquire the write lock, yield the connection, commit or roll back."""
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()

    db = _get_db()
    async with _write_lock:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


def _get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db


async def init_database(path: Path | None = None) -> None:
    """Initialize the database connection and schema."""
    global _db
    db_path = path or get_settings().data_dir / "cron.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(db_path))
    _db.row_factory = aiosqlite.Row
    await create_schema(_db)


async def close_database() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _init_test_database() -> None:
    """Create an in-memory database for tests.

    Uses ``stop()`` + thread join instead of ``await close()`` because
    pytest-asyncio creates a new event loop per test function, and the
    previous connection's worker thread still targets its old loop.
    """
    global _db, _write_lock
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _write_lock = None
    _db = await aiosqlite.connect(":memory:")
    _db.row_factory = aiosqlite.Row
    await create_schema(_db)
