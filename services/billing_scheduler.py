import asyncio
import logging
from typing import Callable, Optional

from services.billing_service import SweepResult

logger = logging.getLogger(__name__)


class BillingScheduler:
    """Runs the billing sweep on a fixed interval in a background task.

    ``run_sweep`` is a blocking callable (it opens its own database session)
    and is executed in a worker thread so the event loop keeps serving
    requests while a sweep is in progress.
    """

    def __init__(self, run_sweep: Callable[[], SweepResult], interval: float = 3600):
        self.run_sweep = run_sweep
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_result: Optional[SweepResult] = None

    async def start(self):
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Billing scheduler started, interval {self.interval}s")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Billing scheduler stopped")

    async def run_once(self) -> Optional[SweepResult]:
        try:
            self.last_result = await asyncio.to_thread(self.run_sweep)
        except Exception as e:
            logger.error(f"Billing sweep failed: {e}")
            return None
        return self.last_result

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self.interval)
            await self.run_once()
