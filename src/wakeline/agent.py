"""Agent invocation. Runs the configured agent command as a subprocess.

The command is an argv list whose elements may contain ``{{Key}}``
placeholders filled from the templating context. Stdout is either JSON
(``{"payloads": [{"text": ..., "mediaUrl": ...}]}``) or plain text, which
becomes a single reply payload.

Cancellation kills the process: the lane runner cancels the awaiting task
on timeout, and we must not leave the agent running behind it.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from asyncio.subprocess import PIPE
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from wakeline.logger import logger
from wakeline.types import AgentRunResult, ReplyPayload
from wakeline.utils import apply_template

_THINK_ALIASES = {
    "off": "off",
    "none": "off",
    "think": "minimal",
    "min": "minimal",
    "minimal": "minimal",
    "low": "low",
    "thinkhard": "low",
    "think-hard": "low",
    "think_hard": "low",
    "med": "medium",
    "mid": "medium",
    "medium": "medium",
    "thinkharder": "medium",
    "think-harder": "medium",
    "think_harder": "medium",
    "high": "high",
    "max": "high",
    "ultra": "high",
    "ultrathink": "high",
}


class AgentCommandError(Exception):
    """The agent command could not be started or exited unsuccessfully."""


class AgentTimeoutError(AgentCommandError):
    """The agent command ran past its timeout and was killed."""


class AgentInvoker(Protocol):
    async def __call__(
        self,
        command: Sequence[str],
        templating_ctx: Mapping[str, str],
        *,
        timeout_ms: int,
        thinking: str | None = None,
    ) -> AgentRunResult: ...


def normalize_think_level(raw: str | None) -> str | None:
    if not raw:
        return None
    return _THINK_ALIASES.get(raw.strip().lower())


def parse_agent_output(stdout: str) -> list[ReplyPayload]:
    """Turn agent stdout into reply payloads."""
    text = stdout.strip()
    if not text:
        return []
    try:
        data: Any = json.loads(text)
    except ValueError:
        return [ReplyPayload(text=text)]

    if isinstance(data, dict) and isinstance(data.get("payloads"), list):
        items = data["payloads"]
    elif isinstance(data, dict) and ("text" in data or "mediaUrl" in data):
        items = [data]
    else:
        return [ReplyPayload(text=text)]

    payloads = []
    for item in items:
        if not isinstance(item, dict):
            continue
        media_urls = item.get("mediaUrls")
        payloads.append(
            ReplyPayload(
                text=item.get("text"),
                media_url=item.get("mediaUrl"),
                media_urls=list(media_urls) if isinstance(media_urls, list) else None,
            )
        )
    return payloads


async def run_agent_command(
    command: Sequence[str],
    templating_ctx: Mapping[str, str],
    *,
    timeout_ms: int,
    thinking: str | None = None,
) -> AgentRunResult:
    """Run the agent once and collect its reply payloads."""
    if not command:
        raise AgentCommandError(
            "Configure agent.command before using cron agent jobs."
        )
    ctx = dict(templating_ctx)
    if thinking:
        ctx["Thinking"] = thinking
    argv = [apply_template(part, ctx) for part in command]

    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(*argv, stdout=PIPE, stderr=PIPE)
    except OSError as exc:
        raise AgentCommandError(f"Failed to start agent: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
    except TimeoutError:
        await _kill(process)
        raise AgentTimeoutError(f"Agent timed out after {timeout_ms // 1000}s") from None
    except asyncio.CancelledError:
        await _kill(process)
        raise

    duration_ms = int((time.monotonic() - started) * 1000)
    if process.returncode != 0:
        tail = stderr.decode(errors="replace").strip()[-500:]
        logger.error(
            "Agent command failed",
            exit_code=process.returncode,
            stderr_tail=tail,
            duration_ms=duration_ms,
        )
        raise AgentCommandError(
            f"Agent exited with code {process.returncode}" + (f": {tail}" if tail else "")
        )

    payloads = parse_agent_output(stdout.decode(errors="replace"))
    logger.info("Agent command completed", payloads=len(payloads), duration_ms=duration_ms)
    return AgentRunResult(payloads=payloads, duration_ms=duration_ms)


async def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    with contextlib.suppress(Exception):
        await process.communicate()
    logger.warning("Agent process killed", pid=process.pid)
