"""Append-only run log. History for operators, never read by the scheduler."""

from __future__ import annotations

from wakeline.state.connection import _get_db
from wakeline.types import RunLogEntry


def _row_to_entry(row) -> RunLogEntry:
    return RunLogEntry(
        ts=row["ts"],
        job_id=row["job_id"],
        action=row["action"],
        status=row["status"],
        error=row["error"],
        summary=row["summary"],
        run_at_ms=row["run_at_ms"],
        duration_ms=row["duration_ms"],
        next_run_at_ms=row["next_run_at_ms"],
    )


async def append_run_log(entry: RunLogEntry) -> None:
    db = _get_db()
    await db.execute(
        """
        INSERT INTO cron_run_logs
            (ts, job_id, action, status, error, summary,
             run_at_ms, duration_ms, next_run_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.ts,
            entry.job_id,
            entry.action,
            entry.status,
            entry.error,
            entry.summary,
            entry.run_at_ms,
            entry.duration_ms,
            entry.next_run_at_ms,
        ),
    )
    await db.commit()


async def get_run_logs(job_id: str, *, limit: int = 200) -> list[RunLogEntry]:
    """Most recent entries for *job_id*, newest first."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM cron_run_logs WHERE job_id = ? ORDER BY ts DESC, id DESC LIMIT ?",
        (job_id, limit),
    )
    rows = await cursor.fetchall()
    return [_row_to_entry(row) for row in rows]
