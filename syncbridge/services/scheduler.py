"""Periodic queue draining and polling."""

import asyncio
import logging
from typing import Callable, List, Optional

from syncbridge.config import settings
from syncbridge.database.database import SessionLocal
from syncbridge.services.poller import Poller
from syncbridge.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Run the engine and the poller on fixed intervals.

    Each tick opens its own session. A failing tick is logged and the loop
    carries on with the next one.
    """

    def __init__(
        self,
        engine: SyncEngine,
        poller: Poller,
        session_factory: Callable = SessionLocal,
        queue_interval: Optional[float] = None,
        poll_interval: Optional[float] = None
    ):
        self.engine = engine
        self.poller = poller
        self.session_factory = session_factory
        self.queue_interval = queue_interval or settings.queue_interval_seconds
        self.poll_interval = poll_interval or settings.poll_interval_seconds
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start both loops on the running event loop."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._loop("queue", self.queue_interval, self.run_queue_tick)),
            asyncio.create_task(self._loop("poll", self.poll_interval, self.run_poll_tick)),
        ]
        logger.info(
            f"Scheduler started (queue every {self.queue_interval}s, poll every {self.poll_interval}s)"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Scheduler stopped")

    async def _loop(self, name: str, interval: float, tick) -> None:
        while True:
            try:
                await tick()
            except Exception as e:
                logger.error(f"Scheduled {name} tick failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def run_queue_tick(self) -> int:
        db = self.session_factory()
        try:
            return await self.engine.process_queue(db)
        finally:
            db.close()

    async def run_poll_tick(self) -> dict:
        db = self.session_factory()
        try:
            return self.poller.poll(db)
        finally:
            db.close()
