"""
Startup consolidation loop.

Drains the backlog of pending sessions in the background after the server starts,
sharing the run lock with on-demand HTTP triggers.
"""

import asyncio
import logging
from typing import Optional

from config.settings import ConsolidationSettings, settings
from modules.consolidation.consolidation_engine import ConsolidationEngine
from modules.consolidation.run_lock import ConsolidationLock

logger = logging.getLogger(__name__)


class BackgroundConsolidation:

    def __init__(
        self,
        engine: ConsolidationEngine,
        lock: ConsolidationLock,
        config: Optional[ConsolidationSettings] = None,
    ):
        self.engine = engine
        self.lock = lock
        self.config = config or settings.consolidation
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="startup-consolidation")
        return self._task

    def request_stop(self) -> None:
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        # Wakes early when a stop is requested
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        consecutive_errors = 0

        while not self._stop.is_set():
            if not self.lock.try_acquire():
                logger.debug("[consolidation] Run already in progress, waiting")
                await self._sleep(self.config.lock_poll_seconds)
                continue

            cursor_before = self.engine.store.get_consolidation_state().last_message_time_created
            failed = False
            try:
                result = await self.engine.consolidate()
            except asyncio.CancelledError:
                logger.info("[consolidation] Background consolidation cancelled")
                raise
            except Exception as e:
                failed = True
                consecutive_errors += 1
                logger.error(
                    f"[consolidation] Background run failed ({consecutive_errors}/"
                    f"{self.config.max_consecutive_errors}): {e}",
                    exc_info=True,
                )
            finally:
                self.lock.release()

            if failed:
                if consecutive_errors >= self.config.max_consecutive_errors:
                    logger.error("[consolidation] Giving up on background consolidation after repeated failures")
                    return
                delay = self.config.retry_base_delay_seconds * 2 ** (consecutive_errors - 1)
                logger.info(f"[consolidation] Retrying in {delay:.0f}s")
                await self._sleep(delay)
                continue

            consecutive_errors = 0
            cursor_after = self.engine.store.get_consolidation_state().last_message_time_created
            pending = self.engine.check_pending()["pendingSessions"]
            if result.sessions_processed == 0 and cursor_after == cursor_before:
                break
            if pending == 0:
                break
            logger.info(f"[consolidation] {pending} sessions still pending, continuing")

        logger.info("[consolidation] Background consolidation finished")

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """Ask the loop to stop and give an in-flight run time to finish before cancelling it."""
        self.request_stop()
        task = self._task
        if task is None or task.done():
            return

        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"[consolidation] Run still in progress after {grace:.0f}s grace period, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except Exception as e:
            logger.error(f"[consolidation] Background task ended with error during shutdown: {e}")
