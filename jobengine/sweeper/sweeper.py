"""
Background sweeps for delayed and stalled jobs.

The sweeper runs two periodic loops:
1. Promote delayed jobs whose ready_at has elapsed
2. Reclaim active jobs whose lease expired (stall recovery)

Dispatch also promotes on demand, so the delay loop only bounds how
long a due job can sit unnoticed while nobody is acquiring.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jobengine.engine.queue import JobQueue

logger = logging.getLogger(__name__)


class Sweeper:
    """Runs the delay-promotion and stall-recovery loops for a queue."""

    def __init__(
        self,
        queue: "JobQueue",
        delay_interval: float,
        stall_interval: float,
        refresh_depth: bool = False,
    ):
        """
        Args:
            queue: The queue to sweep.
            delay_interval: Seconds between delay promotions.
            stall_interval: Seconds between stall sweeps.
            refresh_depth: Refresh the queue depth gauge after each stall sweep.
        """
        self.queue = queue
        self.delay_interval = delay_interval
        self.stall_interval = stall_interval
        self.refresh_depth = refresh_depth
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start both loops as background tasks."""
        if self._running:
            return
        logger.info(
            "Sweeper starting",
            extra={
                "delay_interval": self.delay_interval,
                "stall_interval": self.stall_interval,
            }
        )
        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop("delay", self.delay_interval, self._promote)),
            asyncio.create_task(self._loop("stall", self.stall_interval, self._reclaim)),
        ]

    async def stop(self) -> None:
        """Stop both loops and wait for them to exit."""
        if not self._running:
            return
        logger.info("Sweeper stopping")
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sweeper stopped")

    async def wait(self) -> None:
        """Block until the loops exit."""
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run_once(self) -> tuple[int, int]:
        """
        Run one delay promotion and one stall sweep.

        Returns:
            (jobs promoted, expired leases handled)
        """
        return await self._promote(), await self._reclaim()

    async def _promote(self) -> int:
        return await self.queue.promote_delayed()

    async def _reclaim(self) -> int:
        handled = await self.queue.sweep_stalled()
        if self.refresh_depth:
            await self.queue.counts()
        return handled

    async def _loop(self, kind: str, interval: float, sweep) -> None:
        while self._running:
            try:
                count = await sweep()
                if count > 0:
                    logger.debug(f"{kind} sweep handled {count} jobs")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in {kind} sweep: {e}")

            await asyncio.sleep(interval)
