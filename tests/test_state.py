"""Tests for the SQLite job store and run log."""

from __future__ import annotations

import aiosqlite
import pytest

from wakeline.state import (
    _init_test_database,
    append_run_log,
    close_database,
    delete_job,
    get_due_jobs,
    get_job,
    get_run_logs,
    get_running_jobs,
    init_database,
    list_jobs,
    mark_job_running,
    save_job,
    update_job_definition,
    update_job_state,
)
from wakeline.state.schema import _schema_columns, create_schema
from wakeline.types import (
    AgentTurnPayload,
    CronIsolation,
    CronJob,
    CronSchedule,
    EverySchedule,
    JobState,
    RunLogEntry,
    SystemEventPayload,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    await _init_test_database()


def _job(job_id: str = "job-1", *, next_run: int | None = 1_000, **overrides) -> CronJob:
    fields = {
        "id": job_id,
        "schedule": EverySchedule(every_ms=60_000),
        "session_target": "main",
        "wake_mode": "nextHeartbeat",
        "payload": SystemEventPayload(text="ping"),
        "created_at_ms": 1,
        "updated_at_ms": 1,
        "state": JobState(next_run_at_ms=next_run),
    }
    fields.update(overrides)
    return CronJob(**fields)


class TestJobStore:
    async def test_round_trip(self):
        job = _job(
            name="Digest",
            schedule=CronSchedule(expr="0 9 * * 3", tz="UTC"),
            session_target="isolated",
            wake_mode="now",
            payload=AgentTurnPayload(message="hi", deliver=True, channel="discord", to="c:1"),
            isolation=CronIsolation(post_to_main_prefix="Digest"),
            state=JobState(next_run_at_ms=5, last_status="ok", last_duration_ms=12),
        )
        await save_job(job)

        assert await get_job("job-1") == job

    async def test_get_missing_job(self):
        assert await get_job("nope") is None

    async def test_due_jobs_excludes_disabled_running_and_future(self):
        await save_job(_job("due", next_run=1_000))
        await save_job(_job("future", next_run=9_000))
        await save_job(_job("disabled", next_run=1_000, enabled=False))
        await save_job(_job("exhausted", next_run=None))
        await save_job(_job("running", state=JobState(next_run_at_ms=500, running_at_ms=600)))

        due = await get_due_jobs(1_000)

        assert [j.id for j in due] == ["due"]

    async def test_list_jobs_orders_by_next_run(self):
        await save_job(_job("b", next_run=2_000))
        await save_job(_job("none", next_run=None))
        await save_job(_job("a", next_run=1_000))
        await save_job(_job("off", next_run=500, enabled=False))

        assert [j.id for j in await list_jobs()] == ["off", "a", "b", "none"]
        assert [j.id for j in await list_jobs(include_disabled=False)] == ["a", "b", "none"]

    async def test_mark_running_is_a_claim(self):
        await save_job(_job())

        assert await mark_job_running("job-1", 1_000)
        assert not await mark_job_running("job-1", 1_001)
        assert [j.id for j in await get_running_jobs()] == ["job-1"]

    async def test_update_state_and_enabled(self):
        await save_job(_job())

        await update_job_state(
            "job-1", JobState(last_status="error", last_error="boom"), enabled=False
        )

        job = await get_job("job-1")
        assert not job.enabled
        assert job.state.last_error == "boom"
        assert job.state.next_run_at_ms is None

    async def test_definition_update_leaves_run_state(self):
        await save_job(_job(state=JobState(next_run_at_ms=1_000, running_at_ms=900)))
        edited = _job(
            name="Stretch",
            schedule=EverySchedule(every_ms=120_000),
            updated_at_ms=2,
            state=JobState(next_run_at_ms=5_000, last_status="ok"),
        )

        assert await update_job_definition(edited)

        job = await get_job("job-1")
        assert job.name == "Stretch"
        assert job.schedule == EverySchedule(every_ms=120_000)
        assert job.updated_at_ms == 2
        assert job.state == JobState(next_run_at_ms=1_000, running_at_ms=900)

    async def test_definition_update_can_reschedule(self):
        await save_job(_job(state=JobState(next_run_at_ms=1_000, running_at_ms=900)))

        await update_job_definition(_job(next_run=7_000), reschedule=True)

        job = await get_job("job-1")
        assert job.state.next_run_at_ms == 7_000
        assert job.state.running_at_ms == 900

    async def test_definition_update_of_missing_job(self):
        assert not await update_job_definition(_job("ghost"))

    async def test_delete_removes_job_and_history(self):
        await save_job(_job())
        await append_run_log(RunLogEntry(ts=1, job_id="job-1", action="started"))

        assert await delete_job("job-1")
        assert await get_job("job-1") is None
        assert await get_run_logs("job-1") == []
        assert not await delete_job("job-1")


class TestRunLogs:
    async def test_newest_first_with_limit(self):
        for ts in (1, 3, 2):
            await append_run_log(RunLogEntry(ts=ts, job_id="job-1", action="finished", status="ok"))
        await append_run_log(RunLogEntry(ts=9, job_id="other", action="started"))

        entries = await get_run_logs("job-1", limit=2)

        assert [e.ts for e in entries] == [3, 2]

    async def test_entry_fields_persist(self):
        entry = RunLogEntry(
            ts=10,
            job_id="job-1",
            action="finished",
            status="error",
            error="boom",
            summary="partial",
            run_at_ms=5,
            duration_ms=5,
            next_run_at_ms=60_005,
        )
        await append_run_log(entry)

        assert await get_run_logs("job-1") == [entry]


class TestSchema:
    def test_schema_columns_parsed(self):
        columns = _schema_columns()
        assert "next_run_at_ms" in [name for name, _ in columns["cron_jobs"]]
        assert "summary" in [name for name, _ in columns["cron_run_logs"]]

    async def test_missing_columns_are_added(self):
        db = await aiosqlite.connect(":memory:")
        try:
            await db.execute(
                "CREATE TABLE cron_jobs (id TEXT PRIMARY KEY, created_at_ms INTEGER NOT NULL,"
                " updated_at_ms INTEGER NOT NULL, schedule TEXT NOT NULL,"
                " session_target TEXT NOT NULL, payload TEXT NOT NULL)"
            )
            await create_schema(db)
            cursor = await db.execute("PRAGMA table_info(cron_jobs)")
            names = {row[1] for row in await cursor.fetchall()}
        finally:
            await db.close()

        assert {"last_duration_ms", "running_at_ms", "wake_mode"} <= names


async def test_init_database_on_disk(tmp_path):
    path = tmp_path / "nested" / "cron.db"
    await close_database()
    await init_database(path)
    try:
        await save_job(_job())
        assert await get_job("job-1") is not None
    finally:
        await close_database()
    assert path.exists()
