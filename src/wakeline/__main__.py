"""Entry point for `python -m wakeline` / `wakeline`.

Subcommands:
    wakeline serve          Run the scheduler service (default)
    wakeline list           List cron jobs
    wakeline add            Create a job
    wakeline edit ID        Change a job
    wakeline rm ID          Delete a job and its run history
    wakeline enable ID      Enable a job
    wakeline disable ID     Disable a job
    wakeline run ID         Run a job now, outside its schedule
    wakeline runs ID        Show a job's run history
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from wakeline.config import get_settings
from wakeline.logger import apply_log_level
from wakeline.types import (
    AgentTurnPayload,
    AtSchedule,
    CronIsolation,
    CronJob,
    CronSchedule,
    EverySchedule,
    JobValidationError,
    SystemEventPayload,
)


def _fmt_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=UTC).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _schedule_from_args(args: argparse.Namespace):
    from wakeline.schedule import parse_at_ms, parse_duration_ms

    if args.at:
        return AtSchedule(at_ms=parse_at_ms(args.at))
    if args.every:
        anchor = parse_at_ms(args.anchor) if args.anchor else None
        return EverySchedule(every_ms=parse_duration_ms(args.every), anchor_ms=anchor)
    if args.cron:
        return CronSchedule(expr=args.cron.strip(), tz=args.tz)
    return None


def _agent_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.message is not None:
        overrides["message"] = args.message
    if args.thinking is not None:
        overrides["thinking"] = args.thinking
    if args.timeout is not None:
        overrides["timeout_seconds"] = args.timeout
    if args.deliver is not None:
        overrides["deliver"] = args.deliver
    if args.channel is not None:
        overrides["channel"] = args.channel
    if args.to is not None:
        overrides["to"] = args.to
    if args.best_effort is not None:
        overrides["best_effort_deliver"] = args.best_effort
    return overrides


def _print_job(job: CronJob) -> None:
    from wakeline.schedule import describe_schedule

    flag = "on " if job.enabled else "off"
    print(
        f"{job.id}  [{flag}] {job.session_target:<8} {describe_schedule(job.schedule):<28} "
        f"next={_fmt_ms(job.state.next_run_at_ms)}  last={job.state.last_status or '-'}"
        + (f"  {job.name}" if job.name else "")
    )


async def _with_scheduler(fn):
    from wakeline.dep_factory import make_default_deps
    from wakeline.scheduler import CronScheduler
    from wakeline.state import close_database, init_database

    await init_database()
    try:
        return await fn(CronScheduler(make_default_deps()))
    finally:
        await close_database()


async def _cmd(args: argparse.Namespace) -> int:
    async def _run(scheduler) -> int:
        match args.command:
            case "list":
                for job in await scheduler.list_jobs(include_disabled=args.all):
                    if args.json:
                        print(json.dumps(job.to_dict()))
                    else:
                        _print_job(job)
            case "add":
                schedule = _schedule_from_args(args)
                if schedule is None:
                    raise JobValidationError("One of --at, --every or --cron is required.")
                if args.system_event is not None:
                    target = "main"
                    payload = SystemEventPayload(text=args.system_event)
                    isolation = None
                else:
                    target = "isolated"
                    payload = AgentTurnPayload(**{"message": "", **_agent_overrides(args)})
                    isolation = CronIsolation(post_to_main_prefix=args.prefix or "Cron")
                job = await scheduler.add_job(
                    schedule=schedule,
                    session_target=target,
                    payload=payload,
                    wake_mode=args.wake,
                    name=args.name,
                    enabled=not args.disabled,
                    isolation=isolation,
                )
                _print_job(job)
            case "edit":
                from wakeline.state import get_job

                job = await get_job(args.id)
                if job is None:
                    raise KeyError(args.id)
                changes: dict[str, Any] = {}
                schedule = _schedule_from_args(args)
                if schedule is not None:
                    changes["schedule"] = schedule
                if args.name is not None:
                    changes["name"] = args.name
                if args.wake is not None:
                    changes["wake_mode"] = args.wake
                if isinstance(job.payload, SystemEventPayload):
                    if args.system_event is not None:
                        changes["payload"] = SystemEventPayload(text=args.system_event)
                elif overrides := _agent_overrides(args):
                    changes["payload"] = replace(job.payload, **overrides)
                if args.prefix is not None:
                    changes["isolation"] = CronIsolation(post_to_main_prefix=args.prefix)
                _print_job(await scheduler.update_job(args.id, **changes))
            case "rm":
                if not await scheduler.remove_job(args.id):
                    print(f"No such job: {args.id}", file=sys.stderr)
                    return 1
            case "enable" | "disable":
                _print_job(await scheduler.set_enabled(args.id, args.command == "enable"))
            case "run":
                result = await scheduler.run_now(args.id)
                if result is None:
                    print("Job is already running", file=sys.stderr)
                    return 1
                detail = result.summary or result.error
                print(f"{result.status}: {detail}" if detail else result.status)
                return 0 if result.status != "error" else 1
            case "runs":
                for entry in await scheduler.runs(args.id, limit=args.limit):
                    if args.json:
                        print(json.dumps(entry.to_dict()))
                        continue
                    detail = entry.error or entry.summary or ""
                    print(
                        f"{_fmt_ms(entry.ts)}  {entry.action:<8} {entry.status or '-':<7} "
                        f"{detail[:80]}"
                    )
        return 0

    return await _with_scheduler(_run)


def _add_job_options(p: argparse.ArgumentParser, *, editing: bool) -> None:
    when = p.add_mutually_exclusive_group()
    when.add_argument("--at", help="One-shot time: ISO 8601 or a delay like 20m")
    when.add_argument("--every", help="Interval like 10m, 1h, 1d")
    when.add_argument("--cron", help="5-field cron expression")
    p.add_argument("--anchor", help="Anchor time for --every (ISO 8601)")
    p.add_argument("--tz", help="IANA timezone for --cron")
    p.add_argument("--name")
    p.add_argument(
        "--wake",
        choices=("nextHeartbeat", "now"),
        default=None if editing else "nextHeartbeat",
    )
    what = p.add_mutually_exclusive_group()
    what.add_argument("--system-event", help="Text to inject into the main session")
    what.add_argument("--message", help="Message for an isolated agent turn")
    p.add_argument("--thinking")
    p.add_argument("--timeout", type=int, help="Agent timeout in seconds")
    p.add_argument("--deliver", action=argparse.BooleanOptionalAction, default=None)
    p.add_argument("--channel", choices=("last", "whatsapp", "telegram", "discord"))
    p.add_argument("--to")
    p.add_argument("--best-effort", action=argparse.BooleanOptionalAction, default=None)
    p.add_argument("--prefix", help="Prefix for the summary posted to the main session")
    if not editing:
        p.add_argument("--disabled", action="store_true")


def _serve() -> None:
    from wakeline.app import WakelineApp

    asyncio.run(WakelineApp().run())


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="wakeline",
        description="Cron scheduler for a personal assistant gateway",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the scheduler service")

    p_list = sub.add_parser("list", help="List cron jobs")
    p_list.add_argument("--all", action=argparse.BooleanOptionalAction, default=True)
    p_list.add_argument("--json", action="store_true")

    _add_job_options(sub.add_parser("add", help="Create a job"), editing=False)
    p_edit = sub.add_parser("edit", help="Change a job")
    p_edit.add_argument("id")
    _add_job_options(p_edit, editing=True)

    for name, help_text in (
        ("rm", "Delete a job"),
        ("enable", "Enable a job"),
        ("disable", "Disable a job"),
        ("run", "Run a job now"),
    ):
        sub.add_parser(name, help=help_text).add_argument("id")

    p_runs = sub.add_parser("runs", help="Show a job's run history")
    p_runs.add_argument("id")
    p_runs.add_argument("--limit", type=int, default=20)
    p_runs.add_argument("--json", action="store_true")

    args = parser.parse_args()
    apply_log_level(get_settings().logging.level)

    match args.command:
        case None | "serve":
            _serve()
        case _:
            try:
                code = asyncio.run(_cmd(args))
            except JobValidationError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                code = 2
            except KeyError as exc:
                print(f"No such job: {exc.args[0]}", file=sys.stderr)
                code = 1
            sys.exit(code)


if __name__ == "__main__":
    main()
