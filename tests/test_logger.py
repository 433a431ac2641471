"""Tests for applying the configured log level."""

from __future__ import annotations

import logging

import pytest
from conftest import make_settings

from wakeline.config import LoggingConfig
from wakeline.logger import apply_log_level


@pytest.fixture(autouse=True)
def _restore_root_level():
    root = logging.getLogger()
    original = root.level
    yield
    root.setLevel(original)


def test_config_level_is_applied(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    s = make_settings(logging=LoggingConfig(level="warning"))

    assert apply_log_level(s.logging.level) == logging.WARNING
    assert not logging.getLogger("wakeline").isEnabledFor(logging.INFO)


def test_env_var_wins_over_config(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    logging.getLogger().setLevel(logging.DEBUG)

    assert apply_log_level("ERROR") == logging.DEBUG


def test_unknown_level_falls_back_to_info(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    assert apply_log_level("chatty") == logging.INFO
