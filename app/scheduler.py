"""
In-process sweep loop.

Deployments with an external scheduler hit /cron/* instead. When
RUN_SWEEP_IN_PROCESS is set, the application lifespan starts this loop,
which runs both sweeps every SWEEP_INTERVAL_SECONDS. Running it next to an
external scheduler is safe: the sweeps keep no state and re-check every
operation under a row lock.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.lock_store import LockStore
from app.services import liveness_service

logger = logging.getLogger(__name__)


class SweepScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_store: LockStore,
        interval_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.lock_store = lock_store
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Sweep loop started, interval %ss", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> None:
        await liveness_service.expire_silent_operations(self.session_factory, self.lock_store)
        await liveness_service.fail_stuck_operations(self.session_factory, self.lock_store)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                try:
                    await self.run_once()
                except Exception:
                    # A failed selection query must not stop the loop
                    logger.exception("Sweep run failed")
        except asyncio.CancelledError:
            logger.debug("Sweep loop cancelled")
            raise
