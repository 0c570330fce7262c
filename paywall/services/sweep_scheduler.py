"""
In-process scheduler for the periodic subscription sweep.
"""
import asyncio
import logging
from typing import Optional

from paywall.services.subscription_manager import SubscriptionManager, SweepReport

logger = logging.getLogger(__name__)


class SubscriptionSweepScheduler:
    """Runs SubscriptionManager.process_monthly_checks every ``interval_seconds``."""

    def __init__(self, manager: SubscriptionManager, interval_seconds: float = 3600):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    def start(self) -> None:
        """Start the sweep loop as a background task."""
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"SubscriptionSweepScheduler started - interval: {self.interval_seconds}s")

    async def stop(self) -> None:
        """Stop the loop and wait for an in-flight sweep to finish."""
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("SubscriptionSweepScheduler stopped")

    async def run_once(self) -> SweepReport:
        # The manager is synchronous (SQLAlchemy sessions, blocking locks)
        self.last_report = await asyncio.to_thread(self.manager.process_monthly_checks)
        return self.last_report

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception(f"SubscriptionSweepScheduler sweep failed: {exc}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
