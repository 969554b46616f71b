"""
Dead-letter store.

Holds terminally failed jobs for inspection and manual replay. The
append and the job's transition to DEAD happen in one storage call, so
a failed append leaves the job active with its lease intact.
"""

import logging
from uuid import UUID

from jobengine.clock import Clock, utcnow
from jobengine.constants import DeadLetterReason, JobState
from jobengine.db.base import StorageAdapter
from jobengine.engine.events import EventChannel
from jobengine.errors import NotFound
from jobengine.ids import new_id
from jobengine.observability.metrics import MetricsCollector
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.events import JobEvent
from jobengine.types.job import JobRecord

logger = logging.getLogger(__name__)


class DeadLetterStore:
    """Append-only record of dead jobs with list/get/requeue."""

    def __init__(
        self,
        storage: StorageAdapter,
        events: EventChannel,
        metrics: MetricsCollector,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._events = events
        self._metrics = metrics
        self._clock = clock

    async def record(
        self,
        job: JobRecord,
        *,
        token: str,
        reason: DeadLetterReason,
        error: str | None,
        error_category: str | None,
        attempts_made: int,
        stall_count: int | None = None,
    ) -> JobRecord | None:
        """
        Dead-letter an active job.

        Args:
            job: The job as last read; must still hold `token`.
            token: The lease token that must still be current.
            reason: Why the job is terminal.
            error: Final error message.
            error_category: Caller-supplied error classification.
            attempts_made: Attempt count to persist.
            stall_count: Stall count to persist, unchanged when None.

        Returns:
            The dead job, or None if the lease was no longer held.
        """
        now = self._clock()
        stalls = job.stall_count if stall_count is None else stall_count
        entry = DeadLetterEntry(
            id=new_id(),
            job_id=job.id,
            name=job.name,
            payload=job.payload,
            priority=job.priority,
            max_attempts=job.max_attempts,
            attempts_made=attempts_made,
            stall_count=stalls,
            reason=reason,
            last_error=error,
            error_category=error_category,
            created_at=now,
            backoff=job.backoff,
        )
        changes = {
            "state": JobState.DEAD,
            "attempts_made": attempts_made,
            "stall_count": stalls,
            "last_error": error,
            "error_category": error_category,
            "lease_token": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "finished_at": now,
            "updated_at": now,
        }

        updated = await self._storage.dead_letter(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token=token,
            changes=changes,
            entry=entry,
        )
        if updated is None:
            return None

        logger.warning(
            f"Job moved to dead-letter store after {attempts_made} attempts",
            extra={
                "job_id": str(job.id),
                "dead_letter_id": str(entry.id),
                "reason": reason.value,
                "error": error,
            }
        )
        self._metrics.record_dead_letter(reason.value)
        self._metrics.record_job_finished(job.name, JobState.DEAD)
        self._events.publish(
            JobEvent.job_dead(job.id, entry.id, reason, error, attempts_made)
        )
        return updated

    async def list_entries(self, limit: int = 50, offset: int = 0) -> list[DeadLetterEntry]:
        """
        List dead-letter entries in the order they were appended.

        Raises:
            ValueError: If limit < 1 or offset < 0.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if offset < 0:
            raise ValueError("offset must not be negative")
        return await self._storage.list_dead_letters(limit, offset)

    async def get(self, entry_id: UUID) -> DeadLetterEntry:
        entry = await self._storage.get_dead_letter(entry_id)
        if entry is None:
            raise NotFound("dead letter", entry_id)
        return entry

    async def requeue(self, entry_id: UUID) -> UUID:
        """
        Create a fresh waiting job from a dead-letter entry.

        The new job has a new id, zero attempts and the stored payload,
        name, priority, max_attempts and backoff. The entry is left
        untouched.

        Returns:
            The new job's id.
        """
        entry = await self.get(entry_id)
        now = self._clock()
        job = JobRecord(
            id=new_id(),
            payload=entry.payload,
            name=entry.name,
            priority=entry.priority,
            state=JobState.WAITING,
            created_at=now,
            ready_at=now,
            updated_at=now,
            max_attempts=entry.max_attempts,
            backoff=entry.backoff,
        )
        stored = await self._storage.insert_job(job, enqueue=True)
        await self._storage.notify_ready()

        logger.info(
            "Requeued dead letter",
            extra={"dead_letter_id": str(entry_id), "job_id": str(stored.id)}
        )
        self._metrics.record_job_created(stored.name, JobState.WAITING)
        self._events.publish(JobEvent.job_requeued(stored.id, entry_id))
        return stored.id
