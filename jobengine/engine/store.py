"""
Job store: the job state machine.

    waiting  -> active              lease granted
    delayed  -> waiting             ready_at elapsed, parents completed
    active   -> completed           success
    active   -> delayed             failure with attempts left (backoff)
    active   -> dead                attempts exhausted, non-retryable, stall limit
    active   -> failed              failure reported after cancellation
    active   -> waiting             lease expired (stall recovery)

Every transition is a conditional update in storage; this module only
decides which one to apply.
"""

import logging
from datetime import timedelta
from uuid import UUID

from jobengine.clock import Clock, utcnow
from jobengine.config import Settings
from jobengine.constants import (
    REMOVABLE_STATES,
    SPAN_COMPLETE_JOB,
    SPAN_CREATE_JOB,
    SPAN_FAIL_JOB,
    JobState,
)
from jobengine.db.base import StorageAdapter
from jobengine.engine.backoff import policy_from_spec
from jobengine.engine.events import EventChannel
from jobengine.engine.lease import LeaseManager
from jobengine.engine.retry import RetryEngine
from jobengine.engine.scheduler import ReadyScheduler
from jobengine.errors import InvalidJobOptions, InvalidState, NotFound
from jobengine.ids import new_id
from jobengine.observability.metrics import MetricsCollector
from jobengine.observability.tracing import job_span
from jobengine.types.events import JobEvent
from jobengine.types.job import JobError, JobOptions, JobRecord

logger = logging.getLogger(__name__)

_CLEARED_LEASE = {"lease_token": None, "lease_owner": None, "lease_expires_at": None}


class JobStore:
    """Creates jobs and applies worker-reported and administrative transitions."""

    def __init__(
        self,
        storage: StorageAdapter,
        scheduler: ReadyScheduler,
        leases: LeaseManager,
        retry: RetryEngine,
        events: EventChannel,
        metrics: MetricsCollector,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._scheduler = scheduler
        self._leases = leases
        self._retry = retry
        self._events = events
        self._metrics = metrics
        self._settings = settings
        self._clock = clock

    async def create(self, payload: bytes, options: JobOptions) -> UUID:
        """
        Create a job.

        The job starts WAITING when it has no delay and every parent has
        completed, DELAYED otherwise.

        Args:
            payload: Opaque job body.
            options: Validated creation options.

        Returns:
            The new job's id.

        Raises:
            InvalidJobOptions: If the payload or backoff cannot be accepted.
            NotFound: If a parent job does not exist.
        """
        if not isinstance(payload, bytes):
            raise InvalidJobOptions("payload must be bytes")
        if options.backoff is not None:
            try:
                policy_from_spec(options.backoff, self._retry.custom_policy)
            except ValueError as e:
                raise InvalidJobOptions(str(e)) from e

        parent_refs = tuple(dict.fromkeys(options.parent_refs))
        parents = {p.id: p for p in await self._storage.get_jobs(parent_refs)}
        for parent_id in parent_refs:
            if parent_id not in parents:
                raise NotFound("job", parent_id)
        pending = [p for p in parents.values() if p.state != JobState.COMPLETED]

        now = self._clock()
        ready = options.delay == 0 and not pending
        job = JobRecord(
            id=new_id(),
            payload=payload,
            name=options.name,
            priority=(
                options.priority if options.priority is not None
                else self._settings.default_priority
            ),
            state=JobState.WAITING if ready else JobState.DELAYED,
            created_at=now,
            ready_at=now + timedelta(seconds=options.delay),
            updated_at=now,
            max_attempts=options.max_attempts or self._settings.default_max_attempts,
            parent_refs=parent_refs,
            backoff=options.backoff,
            awaiting_parents=bool(pending),
        )

        with job_span(SPAN_CREATE_JOB, job_id=job.id, job_name=job.name):
            stored = await self._storage.insert_job(job, enqueue=ready)

        logger.info(
            "Job created",
            extra={
                "job_id": str(stored.id),
                "job_name": stored.name,
                "state": stored.state.value,
                "priority": stored.priority,
            }
        )
        self._metrics.record_job_created(stored.name, stored.state)
        self._events.publish(JobEvent.job_created(stored.id, stored.name, stored.state))

        if ready:
            await self._storage.notify_ready()
        elif stored.awaiting_parents:
            # A parent may have completed between the check and the insert
            await self._scheduler.reevaluate(stored)
        return stored.id

    async def get(self, job_id: UUID) -> JobRecord:
        job = await self._storage.get_job(job_id)
        if job is None:
            raise NotFound("job", job_id)
        return job

    async def mark_completed(
        self,
        job_id: UUID,
        token: str,
        result: bytes | None = None,
    ) -> JobRecord:
        """
        Complete an active job held under `token`.

        Raises:
            InvalidLease: If the token is stale or the job is not active.
        """
        with job_span(SPAN_COMPLETE_JOB, job_id=job_id):
            job = await self._storage.get_job(job_id)
            if job is None or job.state != JobState.ACTIVE or job.lease_token != token:
                raise await self._leases.lease_error(job_id, token)

            now = self._clock()
            updated = await self._storage.compare_and_set(
                job_id,
                expected_state=JobState.ACTIVE,
                expected_token=token,
                changes={
                    "state": JobState.COMPLETED,
                    "attempts_made": job.attempts_made + 1,
                    "result": result,
                    "finished_at": now,
                    "updated_at": now,
                    **_CLEARED_LEASE,
                },
            )
            if updated is None:
                raise await self._leases.lease_error(job_id, token)

        logger.info(
            "Job completed",
            extra={"job_id": str(job_id), "attempt": updated.attempts_made}
        )
        self._metrics.record_job_finished(updated.name, JobState.COMPLETED)
        self._events.publish(JobEvent.job_completed(job_id))
        await self._scheduler.release_dependents(job_id)
        return updated

    async def mark_failed(
        self,
        job_id: UUID,
        token: str,
        error: JobError | str,
        retryable: bool = True,
    ) -> JobRecord:
        """
        Report a failed attempt on an active job held under `token`.

        The job is retried, dead-lettered, or, if it was cancelled while
        running, moved to FAILED.

        Raises:
            InvalidLease: If the token is stale or the job is not active.
        """
        if isinstance(error, str):
            error = JobError(error)

        with job_span(SPAN_FAIL_JOB, job_id=job_id, error_category=error.category):
            job = await self._storage.get_job(job_id)
            if job is None or job.state != JobState.ACTIVE or job.lease_token != token:
                raise await self._leases.lease_error(job_id, token)

            if job.cancel_requested:
                updated = await self._fail_cancelled(job, token, error)
            else:
                updated = await self._retry.handle_failure(job, token, error, retryable)
            if updated is None:
                raise await self._leases.lease_error(job_id, token)
        return updated

    async def _fail_cancelled(
        self,
        job: JobRecord,
        token: str,
        error: JobError,
    ) -> JobRecord | None:
        now = self._clock()
        attempts = job.attempts_made + 1
        updated = await self._storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token=token,
            changes={
                "state": JobState.FAILED,
                "attempts_made": attempts,
                "last_error": error.message,
                "error_category": error.category,
                "finished_at": now,
                "updated_at": now,
                **_CLEARED_LEASE,
            },
        )
        if updated is None:
            return None

        logger.info("Cancelled job failed, not retrying", extra={"job_id": str(job.id)})
        self._metrics.record_job_finished(job.name, JobState.FAILED)
        self._events.publish(JobEvent.job_failed(job.id, error.message, attempts))
        return updated

    async def remove(self, job_id: UUID) -> None:
        """
        Delete a job that is not active.

        Raises:
            NotFound: If the job does not exist.
            InvalidState: If the job is active.
        """
        job = await self.get(job_id)
        if job.state == JobState.ACTIVE:
            raise InvalidState(job_id, job.state, "remove")

        if not await self._storage.delete_job(job_id, expected_states=REMOVABLE_STATES):
            current = await self.get(job_id)
            raise InvalidState(job_id, current.state, "remove")

        logger.info("Job removed", extra={"job_id": str(job_id), "state": job.state.value})
        self._events.publish(JobEvent.job_removed(job_id, "removed"))
        await self._scheduler.release_dependents(job_id)

    async def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a job.

        A job that is not running is removed at once. A running job is
        flagged: a failure report ends it in FAILED without retry, and an
        expired lease discards it.

        Returns:
            True if the job was removed, False if it was flagged.

        Raises:
            NotFound: If the job does not exist.
        """
        while True:
            job = await self.get(job_id)

            if job.state != JobState.ACTIVE:
                if await self._storage.delete_job(job_id, expected_states=(job.state,)):
                    logger.info("Job cancelled", extra={"job_id": str(job_id)})
                    self._events.publish(JobEvent.job_removed(job_id, "cancelled"))
                    await self._scheduler.release_dependents(job_id)
                    return True
                continue

            flagged = await self._storage.compare_and_set(
                job_id,
                expected_state=JobState.ACTIVE,
                expected_token=job.lease_token,
                changes={"cancel_requested": True, "updated_at": self._clock()},
            )
            if flagged is not None:
                logger.info(
                    "Cancellation requested for running job",
                    extra={"job_id": str(job_id), "worker_id": job.lease_owner}
                )
                return False

    async def update_payload(self, job_id: UUID, payload: bytes) -> JobRecord:
        """
        Replace the payload of a job that has not finished.

        Raises:
            NotFound: If the job does not exist.
            InvalidState: If the job is terminal.
        """
        if not isinstance(payload, bytes):
            raise InvalidJobOptions("payload must be bytes")

        while True:
            job = await self.get(job_id)
            if job.is_terminal:
                raise InvalidState(job_id, job.state, "update")

            updated = await self._storage.compare_and_set(
                job_id,
                expected_state=job.state,
                expected_token=job.lease_token,
                changes={"payload": payload, "updated_at": self._clock()},
            )
            if updated is not None:
                return updated

    async def counts(self) -> dict[JobState, int]:
        """Job counts for every state, zero-filled."""
        stored = await self._storage.count_by_state()
        counts = {state: stored.get(state, 0) for state in JobState}
        self._metrics.update_queue_depth(counts)
        return counts
