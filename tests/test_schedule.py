"""Tests for next-run computation and duration parsing."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from wakeline.schedule import (
    describe_schedule,
    format_duration_ms,
    next_run,
    parse_at_ms,
    parse_duration_ms,
)
from wakeline.types import AtSchedule, CronSchedule, EverySchedule, JobValidationError


def _ms(iso: str) -> int:
    return int(datetime.fromisoformat(iso).timestamp() * 1000)


class TestNextRunAt:
    def test_future_instant_is_returned(self):
        assert next_run(AtSchedule(at_ms=5_000), 1_000) == 5_000

    def test_past_instant_is_exhausted(self):
        assert next_run(AtSchedule(at_ms=5_000), 5_000) is None
        assert next_run(AtSchedule(at_ms=5_000), 9_000) is None


class TestNextRunEvery:
    def test_unanchored_counts_from_now(self):
        assert next_run(EverySchedule(every_ms=60_000), 1_000) == 61_000

    def test_anchor_in_future_is_first_run(self):
        assert next_run(EverySchedule(every_ms=500, anchor_ms=1_000), 999) == 1_000

    def test_anchored_is_strictly_after_now(self):
        schedule = EverySchedule(every_ms=500, anchor_ms=1_000)
        assert next_run(schedule, 1_000) == 1_500
        assert next_run(schedule, 1_700) == 2_000
        assert next_run(schedule, 1_999) == 2_000

    def test_anchored_grid_does_not_drift(self):
        schedule = EverySchedule(every_ms=60_000, anchor_ms=0)
        # A run that finished 13s late still lands back on the grid
        assert next_run(schedule, 120_000 + 13_000) == 180_000


class TestNextRunCron:
    def test_wednesday_nine_am(self):
        schedule = CronSchedule(expr="0 9 * * 3", tz="UTC")
        # 2026-01-05 is a Monday
        assert next_run(schedule, _ms("2026-01-05T12:00:00+00:00")) == _ms(
            "2026-01-07T09:00:00+00:00"
        )

    def test_matching_minute_is_inclusive(self):
        schedule = CronSchedule(expr="0 9 * * 3", tz="UTC")
        due = _ms("2026-01-07T09:00:00+00:00")
        assert next_run(schedule, due) == due
        assert next_run(schedule, due + 1) == _ms("2026-01-14T09:00:00+00:00")

    def test_evaluated_in_schedule_timezone(self):
        schedule = CronSchedule(expr="0 9 * * *", tz="America/New_York")
        assert next_run(schedule, _ms("2026-01-05T00:00:00+00:00")) == _ms(
            "2026-01-05T14:00:00+00:00"
        )

    def test_falls_back_to_default_timezone(self):
        schedule = CronSchedule(expr="30 8 * * *")
        assert next_run(
            schedule, _ms("2026-01-05T00:00:00+00:00"), default_tz="Asia/Tokyo"
        ) == _ms("2026-01-05T23:30:00+00:00")

    def test_uses_host_timezone_from_settings(self):
        # conftest pins the settings timezone to UTC
        schedule = CronSchedule(expr="*/15 * * * *")
        assert next_run(schedule, _ms("2026-01-05T10:07:00+00:00")) == _ms(
            "2026-01-05T10:15:00+00:00"
        )


class TestDurations:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("250ms", 250),
            ("30s", 30_000),
            ("10m", 600_000),
            ("1.5h", 5_400_000),
            ("2d", 172_800_000),
            (" 10M ", 600_000),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_duration_ms(text) == expected

    @pytest.mark.parametrize("text", ["", "10", "10x", "-5m", "0m", "m"])
    def test_parse_rejects_garbage(self, text):
        with pytest.raises(JobValidationError):
            parse_duration_ms(text)

    @pytest.mark.parametrize(
        ("ms", "expected"),
        [
            (500, "500ms"),
            (45_000, "45s"),
            (120_000, "2m"),
            (3 * 3_600_000, "3h"),
            (50 * 3_600_000, "2d"),
        ],
    )
    def test_format(self, ms, expected):
        assert format_duration_ms(ms) == expected


class TestParseAt:
    def test_relative_delay(self):
        assert parse_at_ms("20m", now=1_000) == 1_201_000

    def test_iso_with_offset(self):
        assert parse_at_ms("2026-01-07T09:00:00Z") == _ms("2026-01-07T09:00:00+00:00")

    def test_naive_iso_uses_default_timezone(self):
        assert parse_at_ms("2026-01-07T09:00:00", default_tz="Europe/Berlin") == _ms(
            "2026-01-07T08:00:00+00:00"
        )

    def test_rejects_garbage(self):
        with pytest.raises(JobValidationError, match="Invalid at time"):
            parse_at_ms("tomorrow-ish")


def test_describe_schedule():
    at = datetime(2026, 1, 7, 9, tzinfo=UTC)
    assert describe_schedule(AtSchedule(at_ms=int(at.timestamp() * 1000))) == (
        "at 2026-01-07T09:00:00+00:00"
    )
    assert describe_schedule(EverySchedule(every_ms=600_000)) == "every 10m"
    assert describe_schedule(CronSchedule(expr="0 9 * * 3", tz="UTC")) == "cron 0 9 * * 3 (UTC)"
