"""
Ready/delay scheduler.

Two ordered views over storage drive dispatch:
- the delay set, DELAYED jobs ordered by (ready_at, id)
- the ready set, WAITING jobs ordered by (priority desc, sequence asc)

Promotion moves due delayed jobs into the ready set with a fresh
sequence number. Claiming the head of the ready set is a
compare-and-set from WAITING to ACTIVE, so two dispatchers can never
take the same job.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from jobengine.clock import Clock, utcnow
from jobengine.constants import JobState
from jobengine.db.base import StorageAdapter
from jobengine.engine.events import EventChannel
from jobengine.errors import DependencyUnsatisfied
from jobengine.observability.metrics import MetricsCollector
from jobengine.types.events import JobEvent
from jobengine.types.job import JobRecord

logger = logging.getLogger(__name__)

# Candidate batches examined by one next_ready call before giving up
MAX_CLAIM_ROUNDS = 5


class ReadyScheduler:
    """Promotes delayed jobs and hands out the next ready one."""

    def __init__(
        self,
        storage: StorageAdapter,
        events: EventChannel,
        metrics: MetricsCollector,
        clock: Clock = utcnow,
        batch_size: int = 100,
    ):
        self._storage = storage
        self._events = events
        self._metrics = metrics
        self._clock = clock
        self._batch_size = batch_size

    async def pending_parents(self, job: JobRecord) -> list[UUID]:
        """
        Parents of `job` that have not completed.

        A parent that no longer exists counts as satisfied.
        """
        if not job.parent_refs:
            return []
        parents = {p.id: p for p in await self._storage.get_jobs(job.parent_refs)}
        return [
            parent_id
            for parent_id in job.parent_refs
            if parent_id in parents and parents[parent_id].state != JobState.COMPLETED
        ]

    async def ensure_parents_satisfied(self, job: JobRecord) -> None:
        """
        Raises:
            DependencyUnsatisfied: If any parent is still incomplete.
        """
        pending = await self.pending_parents(job)
        if pending:
            raise DependencyUnsatisfied(job.id, pending)

    async def promote_due(self, now: datetime | None = None) -> int:
        """
        Move every due, parent-satisfied delayed job to WAITING.

        Jobs found to have incomplete parents are flagged as awaiting
        parents and leave the delay set until a parent finishes.

        Returns:
            Number of jobs promoted.
        """
        now = now or self._clock()
        promoted = 0

        while True:
            due = await self._storage.scan_due(now, self._batch_size)
            for job in due:
                if await self.pending_parents(job):
                    await self._storage.compare_and_set(
                        job.id,
                        expected_state=JobState.DELAYED,
                        changes={"awaiting_parents": True, "updated_at": now},
                    )
                elif await self._promote(job, now):
                    promoted += 1
            if len(due) < self._batch_size:
                break

        if promoted:
            self._metrics.record_promoted(promoted)
            await self._storage.notify_ready()
            logger.debug("Promoted delayed jobs", extra={"count": promoted})
        return promoted

    async def release_dependents(self, parent_id: UUID) -> int:
        """
        Re-evaluate jobs waiting on `parent_id` after it completed or was removed.

        Returns:
            Number of dependents moved to WAITING.
        """
        now = self._clock()
        released = 0

        for child in await self._storage.find_dependents(parent_id):
            if await self.reevaluate(child, now):
                released += 1

        if released:
            self._metrics.record_promoted(released)
            await self._storage.notify_ready()
            logger.info(
                "Released dependent jobs",
                extra={"parent_id": str(parent_id), "count": released}
            )
        return released

    async def reevaluate(self, job: JobRecord, now: datetime | None = None) -> bool:
        """
        Release a job parked on its parents once all of them are done.

        Returns:
            True if the job moved to WAITING.
        """
        if job.state != JobState.DELAYED or not job.awaiting_parents:
            return False
        if await self.pending_parents(job):
            return False

        now = now or self._clock()
        if job.ready_at is not None and job.ready_at > now:
            # Delay not over yet; hand it back to the delay set
            await self._storage.compare_and_set(
                job.id,
                expected_state=JobState.DELAYED,
                changes={"awaiting_parents": False, "updated_at": now},
            )
            return False
        return await self._promote(job, now)

    async def next_ready(
        self,
        claim: Mapping[str, Any],
        now: datetime | None = None,
    ) -> JobRecord | None:
        """
        Claim the best ready job.

        Args:
            claim: Field changes applied when the job moves to ACTIVE.
            now: Current time, defaults to the clock.

        Returns:
            The claimed job, or None if nothing is ready.
        """
        now = now or self._clock()
        await self.promote_due(now)

        for _ in range(MAX_CLAIM_ROUNDS):
            candidates = await self._storage.scan_ready(self._batch_size)
            if not candidates:
                return None

            for job in candidates:
                if job.cancel_requested:
                    await self._discard_cancelled(job)
                    continue

                try:
                    await self.ensure_parents_satisfied(job)
                except DependencyUnsatisfied as e:
                    logger.warning(
                        "Ready job has incomplete parents, returning it to the delay set",
                        extra={"job_id": str(job.id), "pending": [str(p) for p in e.pending]}
                    )
                    await self._storage.compare_and_set(
                        job.id,
                        expected_state=JobState.WAITING,
                        changes={
                            "state": JobState.DELAYED,
                            "awaiting_parents": True,
                            "updated_at": now,
                        },
                    )
                    continue

                claimed = await self._storage.compare_and_set(
                    job.id,
                    expected_state=JobState.WAITING,
                    changes=claim,
                )
                if claimed is not None:
                    return claimed

        return None

    async def _promote(self, job: JobRecord, now: datetime) -> bool:
        updated = await self._storage.compare_and_set(
            job.id,
            expected_state=JobState.DELAYED,
            changes={
                "state": JobState.WAITING,
                "awaiting_parents": False,
                "updated_at": now,
            },
            enqueue=True,
        )
        if updated is None:
            return False
        self._events.publish(JobEvent.job_promoted(job.id))
        return True

    async def _discard_cancelled(self, job: JobRecord) -> None:
        if await self._storage.delete_job(job.id, expected_states=(JobState.WAITING,)):
            logger.info("Discarded cancelled job", extra={"job_id": str(job.id)})
            self._events.publish(JobEvent.job_removed(job.id, "cancelled"))
            await self.release_dependents(job.id)
