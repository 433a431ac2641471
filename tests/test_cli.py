"""Tests for the command-line interface."""

from __future__ import annotations

import json

import pytest

from wakeline.__main__ import main


def _run(monkeypatch, capsys, *argv: str) -> tuple[int, str, str]:
    monkeypatch.setattr("sys.argv", ["wakeline", *argv])
    with pytest.raises(SystemExit) as exc:
        main()
    out, err = capsys.readouterr()
    return exc.value.code, out, err


def _only_job(monkeypatch, capsys) -> dict:
    code, out, _ = _run(monkeypatch, capsys, "list", "--json")
    assert code == 0
    (line,) = out.strip().splitlines()
    return json.loads(line)


class TestCli:
    def test_add_list_run_and_remove(self, monkeypatch, capsys):
        code, _, _ = _run(
            monkeypatch, capsys, "add", "--every", "10m", "--system-event", "Drink water"
        )
        assert code == 0

        job = _only_job(monkeypatch, capsys)
        assert job["sessionTarget"] == "main"
        assert job["schedule"] == {"kind": "every", "everyMs": 600_000}
        assert job["payload"] == {"kind": "systemEvent", "text": "Drink water"}

        code, out, _ = _run(monkeypatch, capsys, "run", job["id"])
        assert code == 0
        assert out.strip() == "ok: Drink water"

        code, out, _ = _run(monkeypatch, capsys, "runs", job["id"], "--json")
        assert [json.loads(line)["action"] for line in out.strip().splitlines()] == [
            "finished",
            "started",
        ]

        code, _, _ = _run(monkeypatch, capsys, "rm", job["id"])
        assert code == 0
        code, _, err = _run(monkeypatch, capsys, "rm", job["id"])
        assert code == 1
        assert "No such job" in err

    def test_add_isolated_job_with_delivery(self, monkeypatch, capsys):
        code, _, _ = _run(
            monkeypatch,
            capsys,
            "add",
            "--cron",
            "0 9 * * 3",
            "--tz",
            "UTC",
            "--message",
            "Weekly review",
            "--deliver",
            "--channel",
            "telegram",
            "--to",
            "42",
            "--prefix",
            "Review",
            "--name",
            "weekly",
        )
        assert code == 0

        job = _only_job(monkeypatch, capsys)
        assert job["name"] == "weekly"
        assert job["sessionTarget"] == "isolated"
        assert job["isolation"] == {"postToMainPrefix": "Review"}
        assert job["payload"] == {
            "kind": "agentTurn",
            "message": "Weekly review",
            "deliver": True,
            "channel": "telegram",
            "to": "42",
        }

    def test_edit_and_disable(self, monkeypatch, capsys):
        _run(monkeypatch, capsys, "add", "--every", "1h", "--message", "Check news")
        job_id = _only_job(monkeypatch, capsys)["id"]

        code, _, _ = _run(monkeypatch, capsys, "edit", job_id, "--every", "2h", "--to", "+1555")
        assert code == 0
        code, _, _ = _run(monkeypatch, capsys, "disable", job_id)
        assert code == 0

        job = _only_job(monkeypatch, capsys)
        assert job["schedule"]["everyMs"] == 7_200_000
        assert job["payload"]["to"] == "+1555"
        assert job["payload"]["message"] == "Check news"
        assert job["enabled"] is False
        assert "nextRunAtMs" not in job["state"]

    def test_invalid_job_is_rejected(self, monkeypatch, capsys):
        code, _, err = _run(monkeypatch, capsys, "add", "--every", "soon", "--message", "x")
        assert code == 2
        assert "Invalid every duration" in err

    def test_missing_schedule(self, monkeypatch, capsys):
        code, _, err = _run(monkeypatch, capsys, "add", "--system-event", "x")
        assert code == 2
        assert "--at, --every or --cron" in err

    def test_unknown_job(self, monkeypatch, capsys):
        code, _, err = _run(monkeypatch, capsys, "enable", "ghost")
        assert code == 1
        assert "No such job: ghost" in err
