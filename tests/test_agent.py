"""Tests for agent invocation and output parsing."""

from __future__ import annotations

import json
import sys

import pytest

from wakeline.agent import (
    AgentCommandError,
    AgentTimeoutError,
    normalize_think_level,
    parse_agent_output,
    run_agent_command,
)
from wakeline.types import ReplyPayload


class TestParseAgentOutput:
    def test_plain_text_is_one_payload(self):
        assert parse_agent_output("hello there\n") == [ReplyPayload(text="hello there")]

    def test_empty_output_has_no_payloads(self):
        assert parse_agent_output("  \n") == []

    def test_payload_list(self):
        out = json.dumps(
            {"payloads": [{"text": "a"}, {"text": "b", "mediaUrl": "x.png"}, "junk"]}
        )
        assert parse_agent_output(out) == [
            ReplyPayload(text="a"),
            ReplyPayload(text="b", media_url="x.png"),
        ]

    def test_single_payload_object(self):
        out = json.dumps({"text": "hi", "mediaUrls": ["a", "b"]})
        assert parse_agent_output(out) == [ReplyPayload(text="hi", media_urls=["a", "b"])]

    def test_unrelated_json_is_text(self):
        assert parse_agent_output("[1, 2]") == [ReplyPayload(text="[1, 2]")]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("high", "high"),
        ("ULTRATHINK", "high"),
        ("think-harder", "medium"),
        ("none", "off"),
        ("bogus", None),
        (None, None),
    ],
)
def test_normalize_think_level(raw, expected):
    assert normalize_think_level(raw) == expected


class TestRunAgentCommand:
    async def test_templated_argv_and_stdout(self):
        command = [sys.executable, "-c", "import sys; print(sys.argv[1])", "{{Body}}"]
        result = await run_agent_command(command, {"Body": "ping"}, timeout_ms=10_000)

        assert result.payloads == [ReplyPayload(text="ping")]
        assert result.duration_ms is not None

    async def test_thinking_is_available_to_template(self):
        command = [sys.executable, "-c", "import sys; print(sys.argv[1])", "{{Thinking}}"]
        result = await run_agent_command(command, {}, timeout_ms=10_000, thinking="low")
        assert result.payloads == [ReplyPayload(text="low")]

    async def test_nonzero_exit_raises_with_stderr(self):
        command = [sys.executable, "-c", "import sys; sys.stderr.write('kaput'); sys.exit(3)"]
        with pytest.raises(AgentCommandError, match="code 3: kaput"):
            await run_agent_command(command, {}, timeout_ms=10_000)

    async def test_timeout_kills_process(self):
        command = [sys.executable, "-c", "import time; time.sleep(30)"]
        with pytest.raises(AgentTimeoutError):
            await run_agent_command(command, {}, timeout_ms=200)

    async def test_missing_command_is_configuration_error(self):
        with pytest.raises(AgentCommandError, match="agent.command"):
            await run_agent_command([], {}, timeout_ms=1_000)

    async def test_unstartable_binary(self):
        with pytest.raises(AgentCommandError, match="Failed to start"):
            await run_agent_command(["/nonexistent/agent-binary"], {}, timeout_ms=1_000)
