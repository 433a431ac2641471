"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (bot tokens) live in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``SECRETS__TELEGRAM_BOT_TOKEN``). Secrets use SecretStr for masking
in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from wakeline.config import get_settings

    s = get_settings()
    print(s.cron.max_concurrent_runs)
    print(s.session.idle_minutes)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_IDLE_MINUTES = 10080  # 7 days

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class CronConfig(_StrictModel):
    enabled: bool = True
    max_concurrent_runs: int = 1
    poll_interval: float = 30.0  # seconds
    lane: str = "cron"  # lane for isolated agent turns
    timezone: str = ""  # empty → auto-detect

    @field_validator("max_concurrent_runs")
    @classmethod
    def clamp_max_concurrent_runs(cls, v: int) -> int:
        return max(1, v)

    @field_validator("lane")
    @classmethod
    def default_lane(cls, v: str) -> str:
        return v.strip() or "cron"


class SessionConfig(_StrictModel):
    store: str | None = None  # None → data/sessions.json
    main_key: str = "main"
    idle_minutes: int = DEFAULT_IDLE_MINUTES
    send_system_once: bool = False
    session_intro: str | None = None  # template, e.g. "Session {{SessionId}} started"
    body_prefix: str | None = None  # template prepended to the first turn

    @field_validator("idle_minutes")
    @classmethod
    def clamp_idle_minutes(cls, v: int) -> int:
        return max(1, v)

    @field_validator("main_key")
    @classmethod
    def default_main_key(cls, v: str) -> str:
        return v.strip() or "main"


class AgentConfig(_StrictModel):
    command: list[str] = []  # argv; each element may contain {{Body}} etc.
    timeout_seconds: int = 600
    thinking_default: str | None = None

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout_seconds(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class DeliveryConfig(_StrictModel):
    allow_from: list[str] = []  # WhatsApp allowlist; ["*"] = anyone


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    telegram_bot_token: SecretStr | None = None
    discord_bot_token: SecretStr | None = None


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    cron: CronConfig = CronConfig()
    session: SessionConfig = SessionConfig()
    agent: AgentConfig = AgentConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def timezone(self) -> str:
        if self.cron.timezone:
            return self.cron.timezone
        return detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def session_store_path(self) -> Path:
        if self.session.store:
            return Path(self.session.store).expanduser().resolve()
        return self.data_dir / "sessions.json"

    @cached_property
    def idle_ms(self) -> int:
        return self.session.idle_minutes * 60_000


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink; fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
