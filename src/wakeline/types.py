"""Data models for wakeline.

Schedules and payloads are closed sum types: one frozen dataclass per
variant, discriminated by ``kind``.  ``validate_job`` is the single place
that enforces the sessionTarget/payload pairing.

Dict forms use the camelCase keys of the on-disk JSON shape and omit
unset optionals, so ``from_dict(x.to_dict()) == x`` for every variant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

SessionTarget = Literal["main", "isolated"]
WakeMode = Literal["nextHeartbeat", "now"]
RunStatus = Literal["ok", "error", "skipped"]
RunAction = Literal["started", "finished", "skipped"]
DeliveryChannel = Literal["last", "whatsapp", "telegram", "discord"]

SURFACES: tuple[str, ...] = ("whatsapp", "telegram", "discord")
WEB_SURFACE = "webchat"  # receives traffic but cannot be delivered to
PRIMARY_SURFACE = "whatsapp"

DEFAULT_POST_TO_MAIN_PREFIX = "Cron"


class JobValidationError(Exception):
    """A job definition is malformed; raised at create/edit time only."""


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


# --- Schedules ---


@dataclass(frozen=True)
class AtSchedule:
    at_ms: int
    kind: Literal["at"] = "at"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "atMs": self.at_ms}


@dataclass(frozen=True)
class EverySchedule:
    every_ms: int
    anchor_ms: int | None = None
    kind: Literal["every"] = "every"

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({"kind": self.kind, "everyMs": self.every_ms, "anchorMs": self.anchor_ms})


@dataclass(frozen=True)
class CronSchedule:
    expr: str
    tz: str | None = None
    kind: Literal["cron"] = "cron"

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({"kind": self.kind, "expr": self.expr, "tz": self.tz})


Schedule = AtSchedule | EverySchedule | CronSchedule


def schedule_from_dict(raw: dict[str, Any]) -> Schedule:
    match raw.get("kind"):
        case "at":
            return AtSchedule(at_ms=int(raw["atMs"]))
        case "every":
            anchor = raw.get("anchorMs")
            return EverySchedule(
                every_ms=int(raw["everyMs"]),
                anchor_ms=int(anchor) if anchor is not None else None,
            )
        case "cron":
            return CronSchedule(expr=str(raw["expr"]), tz=raw.get("tz") or None)
        case other:
            raise JobValidationError(f"Unknown schedule kind: {other!r}")


# --- Payloads ---


@dataclass(frozen=True)
class SystemEventPayload:
    text: str
    kind: Literal["systemEvent"] = "systemEvent"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


@dataclass(frozen=True)
class AgentTurnPayload:
    message: str
    thinking: str | None = None
    timeout_seconds: int | None = None
    deliver: bool | None = None
    channel: DeliveryChannel | None = None
    to: str | None = None
    best_effort_deliver: bool | None = None
    kind: Literal["agentTurn"] = "agentTurn"

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "kind": self.kind,
                "message": self.message,
                "thinking": self.thinking,
                "timeoutSeconds": self.timeout_seconds,
                "deliver": self.deliver,
                "channel": self.channel,
                "to": self.to,
                "bestEffortDeliver": self.best_effort_deliver,
            }
        )


Payload = SystemEventPayload | AgentTurnPayload


def payload_from_dict(raw: dict[str, Any]) -> Payload:
    match raw.get("kind"):
        case "systemEvent":
            return SystemEventPayload(text=str(raw.get("text", "")))
        case "agentTurn":
            timeout = raw.get("timeoutSeconds")
            return AgentTurnPayload(
                message=str(raw.get("message", "")),
                thinking=raw.get("thinking"),
                timeout_seconds=int(timeout) if timeout is not None else None,
                deliver=raw.get("deliver"),
                channel=raw.get("channel"),
                to=raw.get("to"),
                best_effort_deliver=raw.get("bestEffortDeliver"),
            )
        case other:
            raise JobValidationError(f"Unknown payload kind: {other!r}")


# --- Jobs ---


@dataclass(frozen=True)
class CronIsolation:
    post_to_main_prefix: str = DEFAULT_POST_TO_MAIN_PREFIX

    def to_dict(self) -> dict[str, Any]:
        return {"postToMainPrefix": self.post_to_main_prefix}


@dataclass
class JobState:
    next_run_at_ms: int | None = None
    running_at_ms: int | None = None
    last_run_at_ms: int | None = None
    last_status: RunStatus | None = None
    last_error: str | None = None
    last_duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "nextRunAtMs": self.next_run_at_ms,
                "runningAtMs": self.running_at_ms,
                "lastRunAtMs": self.last_run_at_ms,
                "lastStatus": self.last_status,
                "lastError": self.last_error,
                "lastDurationMs": self.last_duration_ms,
            }
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobState:
        return cls(
            next_run_at_ms=raw.get("nextRunAtMs"),
            running_at_ms=raw.get("runningAtMs"),
            last_run_at_ms=raw.get("lastRunAtMs"),
            last_status=raw.get("lastStatus"),
            last_error=raw.get("lastError"),
            last_duration_ms=raw.get("lastDurationMs"),
        )


@dataclass
class CronJob:
    id: str
    schedule: Schedule
    session_target: SessionTarget
    wake_mode: WakeMode
    payload: Payload
    enabled: bool = True
    name: str | None = None
    created_at_ms: int = 0
    updated_at_ms: int = 0
    isolation: CronIsolation | None = None
    state: JobState = field(default_factory=JobState)

    @property
    def label(self) -> str:
        return f"{self.id} {self.name}" if self.name else self.id

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "enabled": self.enabled,
                "createdAtMs": self.created_at_ms,
                "updatedAtMs": self.updated_at_ms,
                "schedule": self.schedule.to_dict(),
                "sessionTarget": self.session_target,
                "wakeMode": self.wake_mode,
                "payload": self.payload.to_dict(),
                "isolation": self.isolation.to_dict() if self.isolation else None,
                "state": self.state.to_dict(),
            }
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CronJob:
        isolation = raw.get("isolation")
        return cls(
            id=str(raw["id"]),
            name=raw.get("name") or None,
            enabled=bool(raw.get("enabled", True)),
            created_at_ms=int(raw.get("createdAtMs", 0)),
            updated_at_ms=int(raw.get("updatedAtMs", 0)),
            schedule=schedule_from_dict(raw["schedule"]),
            session_target=raw.get("sessionTarget", "main"),
            wake_mode=raw.get("wakeMode", "nextHeartbeat"),
            payload=payload_from_dict(raw["payload"]),
            isolation=(
                CronIsolation(
                    post_to_main_prefix=isolation.get(
                        "postToMainPrefix", DEFAULT_POST_TO_MAIN_PREFIX
                    )
                )
                if isolation is not None
                else None
            ),
            state=JobState.from_dict(raw.get("state") or {}),
        )


def _validate_schedule(schedule: Schedule) -> None:
    match schedule:
        case AtSchedule(at_ms=at_ms):
            if at_ms <= 0:
                raise JobValidationError("at schedule requires a positive atMs")
        case EverySchedule(every_ms=every_ms, anchor_ms=anchor_ms):
            if every_ms <= 0:
                raise JobValidationError("every schedule requires a positive everyMs")
            if anchor_ms is not None and anchor_ms < 0:
                raise JobValidationError("every schedule anchorMs must not be negative")
        case CronSchedule(expr=expr, tz=tz):
            if len(expr.split()) != 5 or not croniter.is_valid(expr):
                raise JobValidationError(f"Invalid cron expression: {expr}")
            if tz:
                try:
                    ZoneInfo(tz)
                except (ZoneInfoNotFoundError, ValueError) as exc:
                    raise JobValidationError(f"Unknown timezone: {tz}") from exc


def validate_job(job: CronJob) -> None:
    """Reject malformed jobs before they are persisted.

    Main-session jobs carry a system event, isolated jobs an agent turn;
    anything else is a configuration mistake the user must fix.
    """
    _validate_schedule(job.schedule)

    match (job.session_target, job.payload):
        case ("main", SystemEventPayload(text=text)):
            if not text.strip():
                raise JobValidationError("System event text is required.")
            if job.isolation is not None:
                raise JobValidationError("Main session jobs cannot carry isolation settings.")
        case ("isolated", AgentTurnPayload(message=message) as payload):
            if not message.strip():
                raise JobValidationError("Agent message is required.")
            if payload.timeout_seconds is not None and payload.timeout_seconds <= 0:
                raise JobValidationError("timeoutSeconds must be positive")
            if payload.channel is not None and payload.channel not in ("last", *SURFACES):
                raise JobValidationError(f"Unknown delivery channel: {payload.channel}")
        case ("main", AgentTurnPayload()):
            raise JobValidationError(
                "Main session jobs require systemEvent payloads "
                "(switch Session target to isolated)."
            )
        case ("isolated", SystemEventPayload()):
            raise JobValidationError("Isolated jobs require agentTurn payloads.")
        case (target, _):
            raise JobValidationError(f"Unknown session target: {target!r}")

    if job.wake_mode not in ("nextHeartbeat", "now"):
        raise JobValidationError(f"Unknown wake mode: {job.wake_mode!r}")


# --- Runs ---


@dataclass
class RunLogEntry:
    ts: int
    job_id: str
    action: RunAction
    status: RunStatus | None = None
    error: str | None = None
    summary: str | None = None
    run_at_ms: int | None = None
    duration_ms: int | None = None
    next_run_at_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "ts": self.ts,
                "jobId": self.job_id,
                "action": self.action,
                "status": self.status,
                "error": self.error,
                "summary": self.summary,
                "runAtMs": self.run_at_ms,
                "durationMs": self.duration_ms,
                "nextRunAtMs": self.next_run_at_ms,
            }
        )


@dataclass
class ReplyPayload:
    """One reply chunk produced by the agent command."""

    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] | None = None

    @property
    def media(self) -> list[str]:
        if self.media_urls:
            return list(self.media_urls)
        return [self.media_url] if self.media_url else []


@dataclass
class AgentRunResult:
    payloads: list[ReplyPayload] = field(default_factory=list)
    duration_ms: int | None = None


@dataclass
class CronRunResult:
    status: RunStatus
    summary: str | None = None
    error: str | None = None
    delivered: bool = False


@dataclass
class SendResult:
    message_id: str
    channel_id: str


# --- Sessions ---


_SESSION_KEYS = {
    "sessionId",
    "updatedAt",
    "systemSent",
    "thinkingLevel",
    "verboseLevel",
    "model",
    "contextTokens",
    "lastChannel",
    "lastTo",
}


@dataclass
class SessionEntry:
    session_id: str
    updated_at: int
    system_sent: bool = False
    thinking_level: str | None = None
    verbose_level: str | None = None
    model: str | None = None
    context_tokens: int | None = None
    last_channel: str | None = None
    last_to: str | None = None
    # Keys written by other components (live ingress) that we carry along.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            _drop_none(
                {
                    "sessionId": self.session_id,
                    "updatedAt": self.updated_at,
                    "systemSent": self.system_sent,
                    "thinkingLevel": self.thinking_level,
                    "verboseLevel": self.verbose_level,
                    "model": self.model,
                    "contextTokens": self.context_tokens,
                    "lastChannel": self.last_channel,
                    "lastTo": self.last_to,
                }
            )
        )
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionEntry:
        return cls(
            session_id=str(raw.get("sessionId", "")),
            updated_at=int(raw.get("updatedAt", 0)),
            system_sent=bool(raw.get("systemSent", False)),
            thinking_level=raw.get("thinkingLevel"),
            verbose_level=raw.get("verboseLevel"),
            model=raw.get("model"),
            context_tokens=raw.get("contextTokens"),
            last_channel=raw.get("lastChannel"),
            last_to=raw.get("lastTo"),
            extra={k: v for k, v in raw.items() if k not in _SESSION_KEYS},
        )
