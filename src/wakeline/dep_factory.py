"""Collaborators shared by the scheduler and the isolated-turn runner."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from wakeline.agent import AgentInvoker, run_agent_command
from wakeline.config import get_settings
from wakeline.delivery import MessageSender
from wakeline.lanes import CommandLanes
from wakeline.sessions import SessionStore, get_session_store
from wakeline.system_events import SystemEventQueue


@dataclass
class CronDeps:
    lanes: CommandLanes
    sessions: SessionStore
    system_events: SystemEventQueue
    senders: Mapping[str, MessageSender] = field(default_factory=dict)
    run_agent: AgentInvoker = run_agent_command


def make_default_deps(
    *,
    lanes: CommandLanes | None = None,
    system_events: SystemEventQueue | None = None,
) -> CronDeps:
    """Wire the built-in senders for every surface that has credentials."""
    from wakeline.channels import build_senders

    return CronDeps(
        lanes=lanes or CommandLanes(),
        sessions=get_session_store(get_settings().session_store_path),
        system_events=system_events or SystemEventQueue(),
        senders=build_senders(),
    )
