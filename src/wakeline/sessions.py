"""Session store and freshness resolution.

The store is a single JSON file mapping session key → session entry,
shared by live inbound traffic (the main session) and the scheduler
(isolated ``cron:<jobId>`` sessions). Every read-modify-write goes through
``SessionStore.transaction()``, which holds one lock per store file; keys
being different is not a reason to skip it, since the whole file is
rewritten on save.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from wakeline.config import get_settings
from wakeline.logger import logger
from wakeline.types import SessionEntry
from wakeline.utils import write_json_atomic


@dataclass
class ResolvedSession:
    session_key: str
    entry: SessionEntry
    is_new_session: bool
    system_sent: bool

    @property
    def session_id(self) -> str:
        return self.entry.session_id

    @property
    def is_first_turn(self) -> bool:
        return self.is_new_session or not self.system_sent


def load_session_store(path: Path) -> dict[str, SessionEntry]:
    """Read the whole store. A missing or unreadable file is an empty store."""
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable session store, starting empty", path=str(path), err=str(exc))
        return {}
    if not isinstance(raw, dict):
        return {}
    return {
        key: SessionEntry.from_dict(value) for key, value in raw.items() if isinstance(value, dict)
    }


def save_session_store(path: Path, store: dict[str, SessionEntry]) -> None:
    write_json_atomic(path, {key: entry.to_dict() for key, entry in store.items()}, indent=2)


def resolve_session(
    entry: SessionEntry | None,
    session_key: str,
    now_ms: int,
    *,
    idle_ms: int,
) -> ResolvedSession:
    """Reuse *entry* if it was touched within the idle window, else mint a new session.

    Per-session agent settings (thinking level, model, last route) carry over
    to the new session either way.
    """
    fresh = entry is not None and now_ms - entry.updated_at <= idle_ms
    if fresh:
        session_id = entry.session_id
        system_sent = entry.system_sent
    else:
        session_id = str(uuid.uuid4())
        system_sent = False

    new_entry = SessionEntry(
        session_id=session_id,
        updated_at=now_ms,
        system_sent=system_sent,
    )
    if entry is not None:
        new_entry.thinking_level = entry.thinking_level
        new_entry.verbose_level = entry.verbose_level
        new_entry.model = entry.model
        new_entry.context_tokens = entry.context_tokens
        new_entry.last_channel = entry.last_channel
        new_entry.last_to = entry.last_to
        new_entry.extra = dict(entry.extra)

    return ResolvedSession(
        session_key=session_key,
        entry=new_entry,
        is_new_session=not fresh,
        system_sent=system_sent,
    )


class SessionStore:
    """Serialized access to one session store file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    def load(self) -> dict[str, SessionEntry]:
        return load_session_store(self.path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[dict[str, SessionEntry]]:
        """Load the store, yield it for mutation, and save it on success."""
        async with self._lock:
            store = self.load()
            yield store
            save_session_store(self.path, store)

    async def get(self, session_key: str) -> SessionEntry | None:
        async with self._lock:
            return self.load().get(session_key)

    async def begin_turn(
        self,
        session_key: str,
        now_ms: int,
        *,
        idle_ms: int | None = None,
        send_system_once: bool = False,
    ) -> ResolvedSession:
        """Resolve the session for a new turn and persist it before the turn runs.

        With ``send_system_once`` on, a first turn is recorded as
        ``systemSent`` here, so a crash mid-run never re-sends the preamble.
        """
        if idle_ms is None:
            idle_ms = get_settings().idle_ms
        async with self.transaction() as store:
            resolved = resolve_session(store.get(session_key), session_key, now_ms, idle_ms=idle_ms)
            if send_system_once and resolved.is_first_turn:
                resolved.entry.system_sent = True
            store[session_key] = resolved.entry

        logger.debug(
            "Session resolved",
            session_key=session_key,
            session_id=resolved.session_id,
            is_new_session=resolved.is_new_session,
        )
        return resolved

    async def record_last_route(self, session_key: str, channel: str, to: str) -> None:
        """Remember the delivery route last used by *session_key*."""
        async with self.transaction() as store:
            entry = store.get(session_key)
            if entry is None:
                logger.debug("No session to record route on", session_key=session_key)
                return
            entry.last_channel = channel
            entry.last_to = to


_stores: dict[Path, SessionStore] = {}


def get_session_store(path: Path | None = None) -> SessionStore:
    """Process-wide store per file, so every writer shares one lock."""
    path = (path or get_settings().session_store_path).resolve()
    if path not in _stores:
        _stores[path] = SessionStore(path)
    return _stores[path]
