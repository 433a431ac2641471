"""Next-run computation and duration strings for job schedules."""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from croniter import croniter

from wakeline.config import get_settings
from wakeline.types import AtSchedule, CronSchedule, EverySchedule, JobValidationError, Schedule

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$", re.IGNORECASE)

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def next_run(schedule: Schedule, from_ms: int, *, default_tz: str | None = None) -> int | None:
    """Return the next due time (epoch ms) for *schedule*, or None when exhausted.

    - ``at``: the instant itself if still in the future, else None (exhausted).
    - ``every`` without anchor: ``from_ms + every_ms``, so execution latency
      never compounds into drift measured against the last completed run.
    - ``every`` with anchor: smallest ``anchor + k*every`` (k >= 0) after
      ``from_ms``.
    - ``cron``: smallest matching minute at or after ``from_ms``, evaluated
      in the schedule's timezone (host timezone when unset).
    """
    match schedule:
        case AtSchedule(at_ms=at_ms):
            return at_ms if at_ms > from_ms else None
        case EverySchedule(every_ms=every_ms, anchor_ms=None):
            return from_ms + every_ms
        case EverySchedule(every_ms=every_ms, anchor_ms=anchor_ms):
            if from_ms < anchor_ms:
                return anchor_ms
            k = (from_ms - anchor_ms) // every_ms + 1
            return anchor_ms + k * every_ms
        case CronSchedule(expr=expr, tz=tz):
            zone = ZoneInfo(tz or default_tz or get_settings().timezone)
            # croniter only yields times strictly after its start, so start
            # one millisecond early to include from_ms itself.
            start = datetime.fromtimestamp((from_ms - 1) / 1000, tz=UTC).astimezone(zone)
            nxt = croniter(expr, start).get_next(datetime)
            return int(nxt.timestamp() * 1000)
    raise TypeError(f"Unsupported schedule: {schedule!r}")


def parse_duration_ms(text: str) -> int:
    """Parse ``10m``, ``1.5h``, ``250ms`` etc. into milliseconds."""
    raw = text.strip()
    match = _DURATION_RE.match(raw)
    if not match:
        raise JobValidationError(f"Invalid every duration {text!r} (use 10m, 1h, 1d).")
    n = float(match.group(1))
    if not math.isfinite(n) or n <= 0:
        raise JobValidationError(f"Invalid every duration {text!r} (must be positive).")
    ms = math.floor(n * _UNIT_MS[match.group(2).lower()])
    if ms <= 0:
        raise JobValidationError(f"Invalid every duration {text!r} (must be positive).")
    return ms


def format_duration_ms(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    s = ms / 1000
    if s < 60:
        return f"{round(s)}s"
    m = s / 60
    if m < 60:
        return f"{round(m)}m"
    h = m / 60
    if h < 48:
        return f"{round(h)}h"
    return f"{round(h / 24)}d"


def describe_schedule(schedule: Schedule) -> str:
    match schedule:
        case AtSchedule(at_ms=at_ms):
            return f"at {datetime.fromtimestamp(at_ms / 1000, tz=UTC).isoformat()}"
        case EverySchedule(every_ms=every_ms):
            return f"every {format_duration_ms(every_ms)}"
        case CronSchedule(expr=expr, tz=tz):
            return f"cron {expr} ({tz})" if tz else f"cron {expr}"
    raise TypeError(f"Unsupported schedule: {schedule!r}")


def parse_at_ms(text: str, *, now: int | None = None, default_tz: str | None = None) -> int:
    """Parse a one-shot time: a duration from now (``20m``) or an ISO datetime.

    Naive datetimes are read in *default_tz* (host timezone when unset).
    """
    raw = text.strip()
    if _DURATION_RE.match(raw):
        return (now if now is not None else now_ms()) + parse_duration_ms(raw)
    try:
        when = datetime.fromisoformat(raw)
    except ValueError:
        raise JobValidationError(f"Invalid at time {text!r} (use ISO 8601 or 20m).") from None
    if when.tzinfo is None:
        when = when.replace(tzinfo=ZoneInfo(default_tz or get_settings().timezone))
    return int(when.timestamp() * 1000)
