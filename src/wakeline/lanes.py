"""Lane-serialized command queue.

A lane is a named execution channel: at most one command runs per lane,
queued commands start in FIFO order, and different lanes run fully
concurrently.  Live inbound traffic and main-session cron jobs share the
``main`` lane so they never interleave reads and writes of the same
session entry.

asyncio.ensure_future doesn't run the coroutine synchronously up to the
first await, so ``enqueue`` eagerly marks the lane active in the
synchronous caller and the async ``finally`` block releases it.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from wakeline.logger import logger

MAIN_LANE = "main"
CRON_LANE = "cron"

_command_ids = itertools.count(1)


class LaneTimeoutError(Exception):
    """A lane command ran past its timeout and was cancelled."""


@dataclass
class QueuedCommand:
    id: str
    lane: str
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    timeout: float | None = None
    enqueued_at: float = 0.0


@dataclass
class LaneState:
    active: bool = False
    current: QueuedCommand | None = None
    work: asyncio.Future[Any] | None = None
    pending: deque[QueuedCommand] = field(default_factory=deque)

    def release(self) -> None:
        """Reset transient per-run state when the lane slot is freed."""
        self.active = False
        self.current = None
        self.work = None


class CommandLanes:
    """Per-lane FIFO queue with single-flight execution inside each lane.

    ``enqueue`` returns a future resolving to the command's result. Cancelling
    that future drops a queued command without running it, or cancels the
    running one. A command's timeout is measured from the moment its lane
    starts it; on expiry the work is cancelled (the agent invocation kills
    its subprocess on cancellation) and the future fails with
    ``LaneTimeoutError``.
    """

    def __init__(self, *, warn_after: float = 2.0) -> None:
        self._lanes: dict[str, LaneState] = {}
        self._warn_after = warn_after
        self._shutting_down = False

    def _get_lane(self, lane: str) -> LaneState:
        if lane not in self._lanes:
            self._lanes[lane] = LaneState()
        return self._lanes[lane]

    def enqueue(
        self,
        lane: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        timeout: float | None = None,
        command_id: str | None = None,
    ) -> asyncio.Future[Any]:
        """Queue *fn* on *lane* and return a future for its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        if self._shutting_down:
            future.set_exception(RuntimeError("Command lanes are shutting down"))
            return future

        lane = lane.strip() or MAIN_LANE
        cmd = QueuedCommand(
            id=command_id or f"cmd-{next(_command_ids)}",
            lane=lane,
            fn=fn,
            future=future,
            timeout=timeout,
            enqueued_at=loop.time(),
        )
        future.add_done_callback(lambda f: self._on_future_done(cmd, f))

        state = self._get_lane(lane)
        if state.active:
            state.pending.append(cmd)
            logger.debug(
                "Lane busy, command queued",
                lane=lane,
                command_id=cmd.id,
                queue_size=len(state.pending),
            )
            return future

        # Eagerly mark as active before scheduling the coroutine
        state.active = True
        asyncio.ensure_future(self._run_command(state, cmd))
        return future

    def _on_future_done(self, cmd: QueuedCommand, future: asyncio.Future[Any]) -> None:
        if not future.cancelled():
            return
        state = self._get_lane(cmd.lane)
        if cmd in state.pending:
            state.pending.remove(cmd)
            logger.debug("Queued command cancelled", lane=cmd.lane, command_id=cmd.id)
        elif state.current is cmd and state.work is not None:
            state.work.cancel()

    async def _run_command(self, state: LaneState, cmd: QueuedCommand) -> None:
        """Run one command. The lane is already marked active by the caller."""
        loop = asyncio.get_running_loop()
        waited = loop.time() - cmd.enqueued_at
        if waited >= self._warn_after:
            logger.warning(
                "Lane wait exceeded",
                lane=cmd.lane,
                command_id=cmd.id,
                waited_seconds=round(waited, 3),
                queue_ahead=len(state.pending),
            )

        state.current = cmd
        try:
            work = asyncio.ensure_future(cmd.fn())
            state.work = work
            if cmd.timeout is not None:
                result = await asyncio.wait_for(work, timeout=cmd.timeout)
            else:
                result = await work
        except TimeoutError:
            logger.warning(
                "Lane command timed out",
                lane=cmd.lane,
                command_id=cmd.id,
                timeout_seconds=cmd.timeout,
            )
            if not cmd.future.done():
                cmd.future.set_exception(
                    LaneTimeoutError(f"Command timed out after {cmd.timeout:g}s")
                )
        except asyncio.CancelledError:
            # Only the work was cancelled (future.cancel() or shutdown).
            logger.debug("Lane command cancelled", lane=cmd.lane, command_id=cmd.id)
            if not cmd.future.done():
                cmd.future.cancel()
        except Exception as exc:
            if not cmd.future.done():
                cmd.future.set_exception(exc)
        else:
            if not cmd.future.done():
                cmd.future.set_result(result)
        finally:
            state.release()
            self._drain_lane(cmd.lane)

    def _drain_lane(self, lane: str) -> None:
        """After a command finishes, start the next live queued one."""
        if self._shutting_down:
            return
        state = self._get_lane(lane)
        while state.pending:
            cmd = state.pending.popleft()
            if cmd.future.done():
                continue
            state.active = True
            asyncio.ensure_future(self._run_command(state, cmd))
            return

    def is_active(self, lane: str) -> bool:
        return self._get_lane(lane).active

    def pending_count(self, lane: str) -> int:
        return len(self._get_lane(lane).pending)

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Return a read-only snapshot of lane state for status reporting."""
        return {
            name: {
                "active": state.active,
                "current": state.current.id if state.current else None,
                "pending": len(state.pending),
            }
            for name, state in self._lanes.items()
        }

    async def shutdown(self) -> None:
        """Drop queued commands and cancel running ones."""
        self._shutting_down = True
        running: list[asyncio.Future[Any]] = []
        for state in self._lanes.values():
            while state.pending:
                state.pending.popleft().future.cancel()
            if state.work is not None and not state.work.done():
                state.work.cancel()
                running.append(state.work)
        logger.info("Command lanes shutting down", cancelled_running=len(running))
        if running:
            await asyncio.gather(*running, return_exceptions=True)
