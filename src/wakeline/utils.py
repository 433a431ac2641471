"""Shared utility functions.

Small helpers used across multiple modules: atomic JSON writes, background
tasks that log their failures, ``{{Key}}`` templating, text chunking and
phone-number normalization.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Coroutine, Mapping
from pathlib import Path
from typing import Any

from wakeline.logger import logger

_TEMPLATE_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    tmp.replace(path)


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (job runs, heartbeat requests) where we don't await the result but
    still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks. Logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here: we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


def apply_template(template: str, ctx: Mapping[str, str]) -> str:
    """Replace ``{{Key}}`` placeholders; unknown keys become empty strings."""
    return _TEMPLATE_RE.sub(lambda m: str(ctx.get(m.group(1), "")), template)


def chunk_text(text: str, limit: int) -> list[str]:
    """Split *text* into pieces of at most *limit* characters.

    Prefers breaking on the last newline, then the last space, inside each
    window. Empty input yields no chunks.
    """
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = window.rfind("\n")
        if cut <= 0:
            cut = window.rfind(" ")
        if cut <= 0:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def normalize_e164(number: str) -> str:
    """Normalize a phone number to ``+<digits>`` (strips a ``whatsapp:`` prefix)."""
    without_prefix = number.strip()
    if without_prefix.lower().startswith("whatsapp:"):
        without_prefix = without_prefix[len("whatsapp:") :].strip()
    digits = re.sub(r"[^\d+]", "", without_prefix)
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    return "+" + digits.replace("+", "")
