"""Run a cron job's agent turn in its own disposable session.

Each isolated job owns the session key ``cron:<jobId>``, so its session
writes never collide with another job. The agent invocation itself runs
on the cron lane; delivery happens after the lane slot is released.
"""

from __future__ import annotations

from wakeline.agent import AgentCommandError, normalize_think_level
from wakeline.config import get_settings
from wakeline.dep_factory import CronDeps
from wakeline.delivery import resolve_delivery_target
from wakeline.lanes import LaneTimeoutError
from wakeline.logger import logger
from wakeline.results import deliver_and_classify, pick_summary_from_payloads
from wakeline.schedule import now_ms
from wakeline.sessions import ResolvedSession
from wakeline.types import AgentTurnPayload, CronJob, CronRunResult
from wakeline.utils import apply_template


def isolated_session_key(job_id: str) -> str:
    return f"cron:{job_id}"


def build_command_body(
    job: CronJob,
    message: str,
    session: ResolvedSession,
    *,
    send_system_once: bool,
    session_intro: str | None,
    body_prefix: str | None,
) -> str:
    """Tag the message with the job and prepend the session preamble.

    The body prefix goes on every turn unless ``send_system_once`` limits it
    to a session's first turn; the session intro is always prepended.
    """
    template_ctx = {"SessionId": session.session_id}
    intro = apply_template(session_intro, template_ctx) if session_intro else ""
    prefix = apply_template(body_prefix, template_ctx) if body_prefix else ""

    tag = f"cron:{job.id} {job.name}" if job.name else f"cron:{job.id}"
    body = f"[{tag}] {message}".strip()
    if prefix and (not send_system_once or session.is_first_turn):
        body = f"{prefix}{body}"
    if intro:
        body = f"{intro}\n\n{body}"
    return body


async def run_isolated_agent_turn(
    job: CronJob,
    deps: CronDeps,
    *,
    lane: str | None = None,
    started_at_ms: int | None = None,
) -> CronRunResult:
    if not isinstance(job.payload, AgentTurnPayload):
        return CronRunResult(status="error", error="Isolated jobs require agentTurn payloads.")
    payload = job.payload
    s = get_settings()
    session_key = isolated_session_key(job.id)

    session = await deps.sessions.begin_turn(
        session_key,
        started_at_ms if started_at_ms is not None else now_ms(),
        idle_ms=s.idle_ms,
        send_system_once=s.session.send_system_once,
    )

    thinking = normalize_think_level(payload.thinking) or normalize_think_level(
        s.agent.thinking_default
    )
    timeout_seconds = max(int(payload.timeout_seconds or s.agent.timeout_seconds), 1)

    main_entry = await deps.sessions.get(s.session.main_key)
    target = resolve_delivery_target(
        payload.channel or "last",
        payload.to,
        main_entry,
        allow_from=s.delivery.allow_from,
    )

    body = build_command_body(
        job,
        payload.message,
        session,
        send_system_once=s.session.send_system_once,
        session_intro=s.session.session_intro,
        body_prefix=s.session.body_prefix,
    )
    templating_ctx = {
        "Body": body,
        "BodyStripped": body,
        "SessionId": session.session_id,
        "From": target.to or "",
        "To": target.to or "",
        "Surface": "Cron",
        "IsNewSession": "true" if session.is_new_session else "false",
    }

    lane = (lane or s.cron.lane).strip() or "cron"
    logger.info(
        "Running isolated cron turn",
        job_id=job.id,
        lane=lane,
        session_id=session.session_id,
        is_new_session=session.is_new_session,
        timeout_seconds=timeout_seconds,
    )

    async def _invoke():
        return await deps.run_agent(
            s.agent.command,
            templating_ctx,
            timeout_ms=timeout_seconds * 1000,
            thinking=thinking,
        )

    try:
        run = await deps.lanes.enqueue(
            lane, _invoke, timeout=timeout_seconds, command_id=session_key
        )
    except (AgentCommandError, LaneTimeoutError) as exc:
        logger.error("Cron agent turn failed", job_id=job.id, err=str(exc))
        return CronRunResult(status="error", error=str(exc))
    except Exception as exc:
        logger.exception("Cron agent turn crashed", job_id=job.id)
        return CronRunResult(status="error", error=str(exc))

    summary = pick_summary_from_payloads(run.payloads)

    if not payload.deliver:
        return CronRunResult(status="ok", summary=summary)

    result = await deliver_and_classify(
        target,
        run.payloads,
        summary,
        best_effort=bool(payload.best_effort_deliver),
        senders=deps.senders,
    )
    if result.delivered and target.to:
        await deps.sessions.record_last_route(session_key, target.channel, target.to)
    return result
