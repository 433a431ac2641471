"""Cron scheduler. Finds due jobs on a timer and dispatches them.

Job lifecycle: Idle → (enabled, due, not running) → Dispatched → Idle.
Each tick selects due jobs up to ``cron.max_concurrent_runs`` in flight;
the rest stay due and are picked up by a later tick. Runs are
fire-and-forget from the loop's point of view: a run claims its job by
setting ``runningAtMs``, and writes state and a run-log entry when done.

A ``runningAtMs`` found at startup belongs to a process that died mid-run.
``reconcile_stale_runs`` clears it and logs the anomaly; the missed run is
not retried, the job just waits for its next natural due time and a
one-shot is disabled as if it had finished. A run cancelled by shutdown
is finished as an error, so a clean stop leaves no marker behind.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import Any

from wakeline.config import get_settings
from wakeline.dep_factory import CronDeps
from wakeline.isolated_agent import run_isolated_agent_turn
from wakeline.lanes import MAIN_LANE
from wakeline.logger import logger
from wakeline.results import pick_summary_from_output
from wakeline.schedule import next_run, now_ms
from wakeline.state import (
    append_run_log,
    delete_job,
    get_due_jobs,
    get_job,
    get_run_logs,
    get_running_jobs,
    list_jobs,
    mark_job_running,
    save_job,
    update_job_definition,
    update_job_state,
)
from wakeline.types import (
    AtSchedule,
    CronIsolation,
    CronJob,
    CronRunResult,
    JobState,
    JobValidationError,
    Payload,
    RunLogEntry,
    Schedule,
    SessionTarget,
    SystemEventPayload,
    WakeMode,
    validate_job,
)
from wakeline.utils import create_background_task

STALE_RUN_ERROR = "Stale run marker cleared at startup (process exited mid-run)"
CANCELLED_RUN_ERROR = "Run cancelled at shutdown"

_EDITABLE_FIELDS = {
    "name",
    "enabled",
    "schedule",
    "session_target",
    "wake_mode",
    "payload",
    "isolation",
}


def compute_next_after_run(job: CronJob, started_ms: int, finished_ms: int) -> int | None:
    """Next due time once a run has finished, measured from the finish time.

    A fired one-shot has no next run. The result is always later than the
    run's start, so a run that finishes inside its own due minute is not
    picked up again.
    """
    if isinstance(job.schedule, AtSchedule):
        return None
    nxt = next_run(job.schedule, finished_ms)
    if nxt is not None and nxt <= started_ms:
        nxt = next_run(job.schedule, started_ms + 1)
    return nxt


class CronScheduler:
    """Scheduler loop plus the job management operations callers use."""

    def __init__(self, deps: CronDeps) -> None:
        self.deps = deps
        self._active: dict[str, asyncio.Task[Any]] = {}
        self._wake: asyncio.Event | None = None
        self._running = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Reconcile leftovers from the previous process, then tick forever."""
        s = get_settings()
        if not s.cron.enabled:
            logger.info("Cron disabled, scheduler not started")
            return
        if self._running:
            logger.debug("Scheduler loop already running, skipping duplicate start")
            return
        self._running = True
        self._wake = asyncio.Event()

        await self.reconcile_stale_runs()
        logger.info(
            "Scheduler loop started",
            poll_interval=s.cron.poll_interval,
            max_concurrent_runs=s.cron.max_concurrent_runs,
        )

        try:
            while not self._stopping:
                try:
                    await self.tick()
                except Exception as exc:
                    logger.error("Error in scheduler loop", err=str(exc))
                await self._sleep_until_next_tick()
        finally:
            self._running = False

    def request_stop(self) -> None:
        """Stop dispatching new runs; in-flight runs keep going."""
        self._stopping = True
        self.wake()

    async def stop(self) -> None:
        self.request_stop()
        if self._active:
            logger.info("Waiting for in-flight cron runs", count=len(self._active))
            await asyncio.gather(*self._active.values(), return_exceptions=True)

    def wake(self) -> None:
        """Re-evaluate due times now instead of at the next poll."""
        if self._wake is not None:
            self._wake.set()

    async def _sleep_until_next_tick(self) -> None:
        """Sleep for the poll interval, or less if a wake-now job comes due sooner."""
        s = get_settings()
        delay = s.cron.poll_interval
        current = now_ms()
        for job in await list_jobs(include_disabled=False):
            nxt = job.state.next_run_at_ms
            if job.wake_mode == "now" and nxt is not None and job.state.running_at_ms is None:
                delay = min(delay, max(0.0, (nxt - current) / 1000))

        assert self._wake is not None
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except TimeoutError:
            pass  # normal poll wake-up

    async def reconcile_stale_runs(self) -> int:
        """Clear ``runningAtMs`` markers left by a previous process."""
        current = now_ms()
        stale = await get_running_jobs()
        for job in stale:
            one_shot = isinstance(job.schedule, AtSchedule)
            nxt = job.state.next_run_at_ms
            if one_shot or not job.enabled:
                nxt = None
            elif nxt is None or nxt <= current:
                # The interrupted run consumed this due time; skip to the next one.
                nxt = compute_next_after_run(job, current, current)
            state = replace(
                job.state,
                running_at_ms=None,
                last_status="error",
                last_error=STALE_RUN_ERROR,
                next_run_at_ms=nxt,
            )
            await update_job_state(job.id, state, enabled=False if one_shot else None)
            await append_run_log(
                RunLogEntry(
                    ts=current,
                    job_id=job.id,
                    action="skipped",
                    status="error",
                    error=STALE_RUN_ERROR,
                    run_at_ms=job.state.running_at_ms,
                    next_run_at_ms=state.next_run_at_ms,
                )
            )
            logger.warning(
                "Cleared stale running marker",
                job_id=job.id,
                running_at_ms=job.state.running_at_ms,
            )
        return len(stale)

    async def tick(self, now: int | None = None) -> list[str]:
        """Dispatch due jobs up to the concurrency cap. Returns dispatched job ids."""
        current = now if now is not None else now_ms()
        cap = get_settings().cron.max_concurrent_runs
        due = await get_due_jobs(current)
        if due:
            logger.info("Found due cron jobs", count=len(due), active=len(self._active))

        dispatched: list[str] = []
        for job in due:
            if self._stopping:
                break
            if job.id in self._active:
                continue
            if len(self._active) >= cap:
                logger.debug(
                    "At concurrency limit, job stays due",
                    job_id=job.id,
                    active_count=len(self._active),
                )
                break
            self._dispatch(job)
            dispatched.append(job.id)
        return dispatched

    def _dispatch(self, job: CronJob, *, forced: bool = False) -> asyncio.Task[Any]:
        # Register eagerly: the task body doesn't start until the next await.
        task = create_background_task(self._execute(job, forced=forced), name=f"cron:{job.id}")
        self._active[job.id] = task
        task.add_done_callback(lambda _t: self._active.pop(job.id, None))
        return task

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job: CronJob, *, forced: bool = False) -> CronRunResult | None:
        started = now_ms()
        if not await mark_job_running(job.id, started):
            logger.debug("Job already running, skipping", job_id=job.id)
            return None

        await append_run_log(
            RunLogEntry(ts=started, job_id=job.id, action="started", run_at_ms=started)
        )
        logger.info("Running cron job", job_id=job.id, target=job.session_target, forced=forced)

        try:
            result = await self._run_job(job, started)
        except asyncio.CancelledError:
            logger.warning("Cron job cancelled", job_id=job.id)
            await self._finish(
                job, started, CronRunResult(status="error", error=CANCELLED_RUN_ERROR)
            )
            raise
        except Exception as exc:
            logger.exception("Cron job crashed", job_id=job.id)
            result = CronRunResult(status="error", error=str(exc))

        await self._finish(job, started, result)
        return result

    async def _run_job(self, job: CronJob, started: int) -> CronRunResult:
        if job.session_target == "main":
            return await self._run_main_job(job, started)

        result = await run_isolated_agent_turn(job, self.deps, started_at_ms=started)
        self._post_to_main(job, result, started)
        return result

    async def _run_main_job(self, job: CronJob, started: int) -> CronRunResult:
        """Inject the system event on the main lane, shared with live traffic."""
        if not isinstance(job.payload, SystemEventPayload):
            return CronRunResult(status="error", error="Main session jobs require systemEvent payloads.")
        text = job.payload.text
        events = self.deps.system_events

        async def _inject() -> None:
            events.enqueue_system_event(text, ts=started)
            if job.wake_mode == "now":
                events.request_heartbeat_now()

        await self.deps.lanes.enqueue(MAIN_LANE, _inject, command_id=f"cron:{job.id}")
        return CronRunResult(status="ok", summary=pick_summary_from_output(text))

    def _post_to_main(self, job: CronJob, result: CronRunResult, started: int) -> None:
        """Leave a one-line outcome of an isolated run in the main session."""
        prefix = (job.isolation.post_to_main_prefix if job.isolation else "").strip() or "Cron"
        label = prefix if result.status == "ok" else f"{prefix} ({result.status})"
        body = result.summary or result.error or result.status
        self.deps.system_events.enqueue_system_event(f"{label}: {body}", ts=started)
        if job.wake_mode == "now":
            self.deps.system_events.request_heartbeat_now()

    async def _finish(self, job: CronJob, started: int, result: CronRunResult) -> None:
        finished = now_ms()
        duration = finished - started

        current = await get_job(job.id)
        if current is None:
            logger.info("Job deleted while running", job_id=job.id)
            return

        nxt = compute_next_after_run(current, started, finished)
        one_shot = isinstance(current.schedule, AtSchedule)
        state = replace(
            current.state,
            running_at_ms=None,
            last_run_at_ms=started,
            last_status=result.status,
            last_error=result.error,
            last_duration_ms=duration,
            next_run_at_ms=nxt if current.enabled and not one_shot else None,
        )
        await update_job_state(job.id, state, enabled=False if one_shot else None)
        await append_run_log(
            RunLogEntry(
                ts=finished,
                job_id=job.id,
                action="finished",
                status=result.status,
                error=result.error,
                summary=result.summary,
                run_at_ms=started,
                duration_ms=duration,
                next_run_at_ms=state.next_run_at_ms,
            )
        )
        log = logger.info if result.status != "error" else logger.error
        log(
            "Cron job finished",
            job_id=job.id,
            status=result.status,
            duration_ms=duration,
            next_run_at_ms=state.next_run_at_ms,
            err=result.error,
        )

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------

    async def list_jobs(self, *, include_disabled: bool = True) -> list[CronJob]:
        return await list_jobs(include_disabled=include_disabled)

    async def add_job(
        self,
        *,
        schedule: Schedule,
        session_target: SessionTarget,
        payload: Payload,
        wake_mode: WakeMode = "nextHeartbeat",
        name: str | None = None,
        enabled: bool = True,
        isolation: CronIsolation | None = None,
    ) -> CronJob:
        """Validate and persist a new job, computing its first due time."""
        current = now_ms()
        if session_target == "isolated" and isolation is None:
            isolation = CronIsolation()
        job = CronJob(
            id=str(uuid.uuid4()),
            name=(name or "").strip() or None,
            enabled=enabled,
            created_at_ms=current,
            updated_at_ms=current,
            schedule=schedule,
            session_target=session_target,
            wake_mode=wake_mode,
            payload=payload,
            isolation=isolation,
        )
        validate_job(job)
        job.state = JobState(next_run_at_ms=next_run(schedule, current) if enabled else None)
        await save_job(job)
        logger.info("Cron job added", job_id=job.id, name=job.name, enabled=enabled)
        self.wake()
        return job

    async def update_job(self, job_id: str, **changes: Any) -> CronJob:
        """Apply *changes* to a job; the edited job is validated before saving."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise JobValidationError(f"Cannot edit fields: {sorted(unknown)}")
        job = await get_job(job_id)
        if job is None:
            raise KeyError(job_id)

        edited = replace(job, **changes)
        if "name" in changes:
            edited.name = (edited.name or "").strip() or None
        if edited.session_target == "isolated" and edited.isolation is None:
            edited.isolation = CronIsolation()
        if edited.session_target == "main" and "isolation" not in changes:
            edited.isolation = None
        validate_job(edited)

        current = now_ms()
        edited.updated_at_ms = current
        reschedule = "schedule" in changes or "enabled" in changes
        if reschedule:
            edited.state = replace(
                job.state,
                next_run_at_ms=next_run(edited.schedule, current) if edited.enabled else None,
            )
        # Run state may have moved on since the read; only definition columns are written.
        if not await update_job_definition(edited, reschedule=reschedule):
            raise KeyError(job_id)
        logger.info("Cron job updated", job_id=job_id, fields=sorted(changes))
        self.wake()
        return await get_job(job_id) or edited

    async def set_enabled(self, job_id: str, enabled: bool) -> CronJob:
        return await self.update_job(job_id, enabled=enabled)

    async def remove_job(self, job_id: str) -> bool:
        removed = await delete_job(job_id)
        if removed:
            logger.info("Cron job removed", job_id=job_id)
        return removed

    async def run_now(self, job_id: str) -> CronRunResult | None:
        """Run a job immediately, outside its schedule, and wait for the result.

        Returns None when the job is already running.
        """
        job = await get_job(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.id in self._active or job.state.running_at_ms is not None:
            logger.info("Job already running, run-now ignored", job_id=job_id)
            return None
        return await self._dispatch(job, forced=True)

    async def runs(self, job_id: str, *, limit: int = 200) -> list[RunLogEntry]:
        return await get_run_logs(job_id, limit=limit)
