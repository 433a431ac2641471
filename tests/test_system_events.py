"""Tests for the main-session system event queue."""

from __future__ import annotations

from wakeline.system_events import MAX_EVENTS, SystemEventQueue


def test_enqueue_and_drain():
    queue = SystemEventQueue()
    queue.enqueue_system_event("  first  ", ts=1)
    queue.enqueue_system_event("second", ts=2)

    assert [(e.text, e.ts) for e in queue.drain()] == [("first", 1), ("second", 2)]
    assert queue.peek() == []


def test_blank_and_consecutive_duplicates_dropped():
    queue = SystemEventQueue()
    queue.enqueue_system_event("   ")
    queue.enqueue_system_event("ping")
    queue.enqueue_system_event("ping")
    queue.enqueue_system_event("pong")
    queue.enqueue_system_event("ping")

    assert [e.text for e in queue.peek()] == ["ping", "pong", "ping"]


def test_bounded():
    queue = SystemEventQueue()
    for i in range(MAX_EVENTS + 5):
        queue.enqueue_system_event(f"event {i}")

    events = queue.peek()
    assert len(events) == MAX_EVENTS
    assert events[0].text == "event 5"


def test_heartbeat_request_notifies_and_drain_clears():
    calls = []
    queue = SystemEventQueue(on_heartbeat=lambda: calls.append(1))

    queue.request_heartbeat_now()

    assert calls == [1]
    assert queue.heartbeat_requested.is_set()
    queue.drain()
    assert not queue.heartbeat_requested.is_set()
