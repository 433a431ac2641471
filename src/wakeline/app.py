"""Service process: database, command lanes and the cron scheduler loop."""

from __future__ import annotations

import asyncio
import os
import signal

from wakeline.config import get_settings
from wakeline.dep_factory import make_default_deps
from wakeline.lanes import CommandLanes
from wakeline.logger import apply_log_level, logger
from wakeline.scheduler import CronScheduler
from wakeline.state import close_database, init_database
from wakeline.system_events import SystemEventQueue


class WakelineApp:
    def __init__(self) -> None:
        self.lanes = CommandLanes()
        self.system_events = SystemEventQueue(on_heartbeat=self._on_heartbeat)
        self.scheduler: CronScheduler | None = None
        self._stopped = asyncio.Event()
        self._shutting_down = False

    def _on_heartbeat(self) -> None:
        logger.info("Heartbeat requested", pending_events=len(self.system_events.peek()))

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        loop = asyncio.get_running_loop()
        loop.call_later(12, lambda: os._exit(1))

        if self.scheduler is not None:
            self.scheduler.request_stop()
        await self.lanes.shutdown()
        if self.scheduler is not None:
            await self.scheduler.stop()
        self._stopped.set()

    async def run(self) -> None:
        s = get_settings()
        apply_log_level(s.logging.level)
        await init_database()
        logger.info("Database initialized", data_dir=str(s.data_dir))

        deps = make_default_deps(lanes=self.lanes, system_events=self.system_events)
        self.scheduler = CronScheduler(deps)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        scheduler_task = asyncio.create_task(self.scheduler.start())
        try:
            await self._stopped.wait()
        finally:
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
            await close_database()
            logger.info("Shutdown complete")
