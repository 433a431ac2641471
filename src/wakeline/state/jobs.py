"""Cron job persistence.

Schedule, payload and isolation are stored as JSON in their dict form;
run state is spread over plain columns so due-job selection stays a
single indexed query.
"""

from __future__ import annotations

import json
from typing import Any

from wakeline.state.connection import _get_db, atomic_write
from wakeline.types import (
    CronIsolation,
    CronJob,
    JobState,
    payload_from_dict,
    schedule_from_dict,
)


def _row_to_job(row) -> CronJob:
    isolation = json.loads(row["isolation"]) if row["isolation"] else None
    return CronJob(
        id=row["id"],
        name=row["name"],
        enabled=bool(row["enabled"]),
        created_at_ms=row["created_at_ms"],
        updated_at_ms=row["updated_at_ms"],
        schedule=schedule_from_dict(json.loads(row["schedule"])),
        session_target=row["session_target"],
        wake_mode=row["wake_mode"],
        payload=payload_from_dict(json.loads(row["payload"])),
        isolation=(
            CronIsolation(post_to_main_prefix=isolation["postToMainPrefix"])
            if isolation is not None
            else None
        ),
        state=JobState(
            next_run_at_ms=row["next_run_at_ms"],
            running_at_ms=row["running_at_ms"],
            last_run_at_ms=row["last_run_at_ms"],
            last_status=row["last_status"],
            last_error=row["last_error"],
            last_duration_ms=row["last_duration_ms"],
        ),
    )


def _definition_params(job: CronJob) -> dict[str, Any]:
    return {
        "name": job.name,
        "enabled": 1 if job.enabled else 0,
        "updated_at_ms": job.updated_at_ms,
        "schedule": json.dumps(job.schedule.to_dict()),
        "session_target": job.session_target,
        "wake_mode": job.wake_mode,
        "payload": json.dumps(job.payload.to_dict()),
        "isolation": json.dumps(job.isolation.to_dict()) if job.isolation else None,
    }


def _job_params(job: CronJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "created_at_ms": job.created_at_ms,
        **_definition_params(job),
        **_state_params(job.state),
    }


def _state_params(state: JobState) -> dict[str, Any]:
    return {
        "next_run_at_ms": state.next_run_at_ms,
        "running_at_ms": state.running_at_ms,
        "last_run_at_ms": state.last_run_at_ms,
        "last_status": state.last_status,
        "last_error": state.last_error,
        "last_duration_ms": state.last_duration_ms,
    }


async def save_job(job: CronJob) -> None:
    """Insert or fully replace a job row."""
    params = _job_params(job)
    columns = ", ".join(params)
    placeholders = ", ".join(f":{k}" for k in params)
    db = _get_db()
    await db.execute(
        f"INSERT OR REPLACE INTO cron_jobs ({columns}) VALUES ({placeholders})",
        params,
    )
    await db.commit()


async def get_job(job_id: str) -> CronJob | None:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM cron_jobs WHERE id = ?", (job_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_job(row)


async def list_jobs(*, include_disabled: bool = True) -> list[CronJob]:
    """All jobs, soonest due first; jobs with no next run sort last."""
    db = _get_db()
    where = "" if include_disabled else "WHERE enabled = 1"
    cursor = await db.execute(
        f"SELECT * FROM cron_jobs {where} "
        "ORDER BY next_run_at_ms IS NULL, next_run_at_ms, created_at_ms"
    )
    rows = await cursor.fetchall()
    return [_row_to_job(row) for row in rows]


async def get_due_jobs(now_ms: int) -> list[CronJob]:
    """Enabled, not-running jobs whose next run is at or before *now_ms*."""
    db = _get_db()
    cursor = await db.execute(
        """
        SELECT * FROM cron_jobs
        WHERE enabled = 1
          AND running_at_ms IS NULL
          AND next_run_at_ms IS NOT NULL
          AND next_run_at_ms <= ?
        ORDER BY next_run_at_ms
        """,
        (now_ms,),
    )
    rows = await cursor.fetchall()
    return [_row_to_job(row) for row in rows]


async def get_running_jobs() -> list[CronJob]:
    db = _get_db()
    cursor = await db.execute("SELECT * FROM cron_jobs WHERE running_at_ms IS NOT NULL")
    rows = await cursor.fetchall()
    return [_row_to_job(row) for row in rows]


async def update_job_state(job_id: str, state: JobState, *, enabled: bool | None = None) -> None:
    """Write a job's run state (and optionally its enabled flag)."""
    params = _state_params(state)
    assignments = [f"{k} = :{k}" for k in params]
    if enabled is not None:
        params["enabled"] = 1 if enabled else 0
        assignments.append("enabled = :enabled")
    params["id"] = job_id
    db = _get_db()
    await db.execute(
        f"UPDATE cron_jobs SET {', '.join(assignments)} WHERE id = :id",
        params,
    )
    await db.commit()


async def update_job_definition(job: CronJob, *, reschedule: bool = False) -> bool:
    """Write a job's editable fields, leaving run state to the run in flight.

    With *reschedule*, ``next_run_at_ms`` is taken from ``job.state`` too.
    Returns False if the job no longer exists.
    """
    params = _definition_params(job)
    if reschedule:
        params["next_run_at_ms"] = job.state.next_run_at_ms
    assignments = ", ".join(f"{k} = :{k}" for k in params)
    params["id"] = job.id
    db = _get_db()
    cursor = await db.execute(f"UPDATE cron_jobs SET {assignments} WHERE id = :id", params)
    await db.commit()
    return cursor.rowcount == 1


async def mark_job_running(job_id: str, running_at_ms: int) -> bool:
    """Claim a job for execution; False if it is already running."""
    db = _get_db()
    cursor = await db.execute(
        "UPDATE cron_jobs SET running_at_ms = ? WHERE id = ? AND running_at_ms IS NULL",
        (running_at_ms, job_id),
    )
    await db.commit()
    return cursor.rowcount == 1


async def delete_job(job_id: str) -> bool:
    """Delete a job and its run logs. Returns False if it did not exist."""
    async with atomic_write() as db:
        await db.execute("DELETE FROM cron_run_logs WHERE job_id = ?", (job_id,))
        cursor = await db.execute("DELETE FROM cron_jobs WHERE id = ?", (job_id,))
    return cursor.rowcount == 1
