"""Structured logging singleton.

The level comes from the ``LOG_LEVEL`` environment variable at import time,
so the logger works before Settings load (config errors get logged too).
Once Settings are available, ``apply_log_level`` applies ``[logging] level``
unless ``LOG_LEVEL`` was set explicitly.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

DEFAULT_LEVEL = "INFO"


def _level_number(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _setup_logging() -> structlog.stdlib.BoundLogger:
    # filter_by_level checks the stdlib logger, so the root level gates everything
    logging.basicConfig(
        level=_level_number(os.environ.get("LOG_LEVEL", DEFAULT_LEVEL)),
        format="%(message)s",
        stream=sys.stderr,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("wakeline")


logger = _setup_logging()


def apply_log_level(level_name: str) -> int:
    """Set the root level from config. Returns the level now in effect."""
    root = logging.getLogger()
    if os.environ.get("LOG_LEVEL"):
        return root.level
    root.setLevel(_level_number(level_name))
    return root.level


def _log_uncaught(exc_type: type[BaseException], exc_value: BaseException, exc_tb: object) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
