"""Shared test fixtures for wakeline."""

from __future__ import annotations

from pathlib import Path

import pytest

from wakeline.types import SendResult

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "timezone",
        "project_root",
        "data_dir",
        "session_store_path",
        "idle_ms",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (cron, session, etc.) and cached property
    overrides (timezone, data_dir, session_store_path).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(cron=CronConfig(max_concurrent_runs=2))
        s = make_settings(session_store_path=tmp_path / "sessions.json")
    """
    from wakeline.config import (
        AgentConfig,
        CronConfig,
        DeliveryConfig,
        LoggingConfig,
        SecretsConfig,
        SessionConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}
    cached.setdefault("timezone", "UTC")

    defaults = {
        "cron": CronConfig(),
        "session": SessionConfig(),
        "agent": AgentConfig(command=["agent"]),
        "delivery": DeliveryConfig(),
        "logging": LoggingConfig(),
        "secrets": SecretsConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


class FakeSender:
    """Records outbound messages; optionally fails every send."""

    def __init__(self, name: str, *, fail: Exception | None = None) -> None:
        self.name = name
        self.fail = fail
        self.sent: list[tuple[str, str, str | None]] = []

    async def send_message(self, to: str, text: str, *, media_url: str | None = None):
        if self.fail is not None:
            raise self.fail
        self.sent.append((to, text, media_url))
        return SendResult(message_id=f"m{len(self.sent)}", channel_id=to)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path: Path):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults, no config.toml,
    no .env. Data lands under the test's tmp_path.
    """
    safe = make_settings(
        data_dir=tmp_path / "data",
        session_store_path=tmp_path / "data" / "sessions.json",
    )
    monkeypatch.setattr("wakeline.config._settings", safe)
    monkeypatch.setattr("wakeline.sessions._stores", {})


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because
    the connection was created on a function-scoped event loop.
    """
    yield
    import wakeline.state.connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None
