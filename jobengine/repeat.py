"""
Interval repeat jobs.

A RepeatScheduler sits outside the job state machine: on every tick it
creates a fresh job for each repeat whose next run time has come. The
created jobs are ordinary jobs with their own retries and dead letters.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from jobengine.clock import Clock
from jobengine.constants import DEFAULT_JOB_NAME, MAX_DURATION_SECONDS, REPEAT_HISTORY_SIZE
from jobengine.engine.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass
class RepeatSpec:
    """A job template created every `every` seconds."""

    key: str
    payload: bytes
    every: float
    name: str = DEFAULT_JOB_NAME
    priority: int | None = None
    max_attempts: int | None = None
    limit: int | None = None
    next_run: datetime | None = None
    count: int = 0
    # Most recent job ids, oldest dropped first
    job_ids: deque[UUID] = field(default_factory=lambda: deque(maxlen=REPEAT_HISTORY_SIZE))

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.count >= self.limit


class RepeatScheduler:
    """
    Creates jobs on a fixed interval.

    Example:
        repeats = RepeatScheduler(queue)
        repeats.add("nightly-report", b"{}", every=86400, name="report")
        await repeats.start()
    """

    def __init__(self, queue: JobQueue, check_interval: float = 1.0, clock: Clock | None = None):
        self.queue = queue
        self.check_interval = check_interval
        self._clock = clock or queue.clock
        self._repeats: dict[str, RepeatSpec] = {}
        self._running = False
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    def add(
        self,
        key: str,
        payload: bytes,
        every: float,
        *,
        name: str = DEFAULT_JOB_NAME,
        priority: int | None = None,
        max_attempts: int | None = None,
        limit: int | None = None,
        immediately: bool = True,
    ) -> RepeatSpec:
        """
        Register a repeat, replacing any with the same key.

        Args:
            key: Unique repeat identifier.
            payload: Payload of every created job.
            every: Seconds between runs.
            name: Job name of created jobs.
            priority: Job priority of created jobs.
            max_attempts: Attempts per created job.
            limit: Stop after this many jobs. Unlimited when None.
            immediately: Create the first job on the next tick rather than
                after one interval.
        """
        if not math.isfinite(every) or every <= 0 or every > MAX_DURATION_SECONDS:
            raise ValueError("every must be positive, finite and at most 30 days")
        if limit is not None and limit < 1:
            raise ValueError("limit must be at least 1")

        now = self._clock()
        spec = RepeatSpec(
            key=key,
            payload=payload,
            every=every,
            name=name,
            priority=priority,
            max_attempts=max_attempts,
            limit=limit,
            next_run=now if immediately else now + timedelta(seconds=every),
        )
        self._repeats[key] = spec
        logger.info("Repeat registered", extra={"repeat_key": key, "every": every})
        return spec

    def remove(self, key: str) -> bool:
        removed = self._repeats.pop(key, None) is not None
        if removed:
            logger.info("Repeat removed", extra={"repeat_key": key})
        return removed

    def get(self, key: str) -> RepeatSpec | None:
        return self._repeats.get(key)

    def list_repeats(self) -> list[RepeatSpec]:
        return list(self._repeats.values())

    async def run_once(self, now: datetime | None = None) -> list[UUID]:
        """
        Create a job for every repeat that is due.

        A repeat that fell several intervals behind creates one job and
        is rescheduled relative to `now`.

        Returns:
            IDs of the created jobs.
        """
        now = now or self._clock()
        created = []

        async with self._lock:
            for spec in list(self._repeats.values()):
                if spec.exhausted or spec.next_run is None or spec.next_run > now:
                    continue

                job_id = await self.queue.create(
                    spec.payload,
                    name=spec.name,
                    priority=spec.priority,
                    max_attempts=spec.max_attempts,
                )
                spec.count += 1
                spec.job_ids.append(job_id)
                created.append(job_id)

                next_run = spec.next_run + timedelta(seconds=spec.every)
                if next_run <= now:
                    next_run = now + timedelta(seconds=spec.every)
                spec.next_run = next_run

                if spec.exhausted:
                    logger.info("Repeat reached its limit", extra={"repeat_key": spec.key})
                    del self._repeats[spec.key]

        return created

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Repeat scheduler started", extra={"repeats": len(self._repeats)})

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Repeat scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in repeat loop: {e}")
            await asyncio.sleep(self.check_interval)
