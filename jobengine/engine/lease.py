"""
Lease manager.

A lease is a time-bounded exclusive claim on an active job, identified
by an opaque token. Renew, complete and fail all compare the token, so a
worker whose lease was reclaimed by the stall sweep can no longer
change the job.
"""

import asyncio
import logging
import math
import secrets
from datetime import datetime, timedelta
from uuid import UUID

from jobengine.clock import Clock, utcnow
from jobengine.constants import (
    MAX_DURATION_SECONDS,
    SPAN_ACQUIRE_LEASE,
    SPAN_SWEEP,
    STALL_LIMIT_ERROR,
    DeadLetterReason,
    JobState,
)
from jobengine.db.base import StorageAdapter
from jobengine.engine.dead_letter import DeadLetterStore
from jobengine.engine.events import EventChannel
from jobengine.engine.scheduler import ReadyScheduler
from jobengine.errors import InvalidLease, InvalidState, NotFound
from jobengine.observability.metrics import MetricsCollector
from jobengine.observability.tracing import job_span
from jobengine.types.events import JobEvent
from jobengine.types.job import JobRecord, LeasedJob

logger = logging.getLogger(__name__)


def new_lease_token() -> str:
    return secrets.token_hex(16)


def _check_duration(label: str, seconds: float) -> None:
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"{label} must be a positive finite number of seconds")
    if seconds > MAX_DURATION_SECONDS:
        raise ValueError(f"{label} must not exceed {MAX_DURATION_SECONDS:.0f} seconds")


class LeaseManager:
    """Grants, renews and reclaims job leases."""

    def __init__(
        self,
        storage: StorageAdapter,
        scheduler: ReadyScheduler,
        dead_letters: DeadLetterStore,
        events: EventChannel,
        metrics: MetricsCollector,
        clock: Clock = utcnow,
        max_stalled_count: int = 1,
        poll_interval: float = 1.0,
        batch_size: int = 100,
    ):
        """
        Args:
            storage: Storage adapter.
            scheduler: Source of ready jobs.
            dead_letters: Destination for jobs over the stall limit.
            events: Event channel.
            metrics: Metrics collector.
            clock: Time source.
            max_stalled_count: Stalls tolerated before a job is dead-lettered.
            poll_interval: Longest wait between polls in a blocking acquire.
            batch_size: Expired leases handled per storage scan.
        """
        self._storage = storage
        self._scheduler = scheduler
        self._dead_letters = dead_letters
        self._events = events
        self._metrics = metrics
        self._clock = clock
        self.max_stalled_count = max_stalled_count
        self._poll_interval = poll_interval
        self._batch_size = batch_size

    async def acquire(
        self,
        worker_id: str,
        lease_duration: float,
        block_timeout: float | None = None,
    ) -> LeasedJob | None:
        """
        Lease the best ready job.

        Args:
            worker_id: Identifier of the requesting worker.
            lease_duration: Seconds until the lease expires unless renewed.
            block_timeout: Wait up to this many seconds for a job to become
                ready. Returns immediately when None or 0.

        Returns:
            The leased job with its token, or None if nothing was ready.

        Raises:
            ValueError: If lease_duration is not positive, finite and
                within MAX_DURATION_SECONDS.
        """
        _check_duration("lease_duration", lease_duration)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + block_timeout if block_timeout else None

        while True:
            leased = await self._try_acquire(worker_id, lease_duration)
            if leased is not None or deadline is None:
                return leased

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            # Notifications only cover this process, so keep polling too
            await self._storage.wait_for_ready(min(remaining, self._poll_interval))

    async def _try_acquire(self, worker_id: str, lease_duration: float) -> LeasedJob | None:
        with job_span(SPAN_ACQUIRE_LEASE, worker_id=worker_id) as span:
            now = self._clock()
            token = new_lease_token()
            job = await self._scheduler.next_ready(
                {
                    "state": JobState.ACTIVE,
                    "lease_token": token,
                    "lease_owner": worker_id,
                    "lease_expires_at": now + timedelta(seconds=lease_duration),
                    "updated_at": now,
                },
                now,
            )
            if job is None:
                return None

            span.set_attribute("job_id", str(job.id))
            logger.info(
                "Lease acquired",
                extra={
                    "job_id": str(job.id),
                    "worker_id": worker_id,
                    "attempt": job.attempts_made + 1,
                }
            )
            self._metrics.record_lease_acquired(worker_id)
            self._events.publish(JobEvent.job_active(job.id, worker_id, job.attempts_made + 1))
            return LeasedJob(job=job, token=token)

    async def renew(self, job_id: UUID, token: str, extension: float) -> JobRecord:
        """
        Extend a held lease to now + extension.

        Raises:
            InvalidLease: If the token is stale or the job is not active.
            ValueError: If extension is out of range.
        """
        _check_duration("extension", extension)

        now = self._clock()
        updated = await self._storage.compare_and_set(
            job_id,
            expected_state=JobState.ACTIVE,
            expected_token=token,
            changes={"lease_expires_at": now + timedelta(seconds=extension), "updated_at": now},
        )
        if updated is None:
            raise await self.lease_error(job_id, token)

        logger.debug(
            "Lease renewed",
            extra={"job_id": str(job_id), "expires_at": updated.lease_expires_at.isoformat()}
        )
        return updated

    async def lease_error(self, job_id: UUID, token: str) -> InvalidLease:
        """Describe why `token` does not hold a lease on `job_id`."""
        job = await self._storage.get_job(job_id)
        if job is None:
            return InvalidLease(job_id, "job not found")
        if job.state != JobState.ACTIVE:
            return InvalidLease(job_id, f"job is {job.state.value}")
        return InvalidLease(job_id, "lease token does not match")

    async def sweep_stalled(self, now: datetime | None = None) -> int:
        """
        Reclaim every active job whose lease expired before `now`.

        Returns:
            Number of expired leases handled.
        """
        now = now or self._clock()
        handled = 0

        with job_span(SPAN_SWEEP, kind="stalled"):
            while True:
                expired = await self._storage.scan_expired(now, self._batch_size)
                for job in expired:
                    if await self._recover(job, now):
                        handled += 1
                if len(expired) < self._batch_size:
                    break

        if handled:
            logger.info("Recovered stalled jobs", extra={"count": handled})
        return handled

    async def _recover(self, job: JobRecord, now: datetime) -> bool:
        if job.cancel_requested:
            return await self._discard_cancelled(job, now)

        self._metrics.record_lease_stalled(job.name)

        if job.stall_count >= self.max_stalled_count:
            dead = await self._dead_letters.record(
                job,
                token=job.lease_token,
                reason=DeadLetterReason.EXCEEDED_STALL_LIMIT,
                error=STALL_LIMIT_ERROR,
                error_category=None,
                attempts_made=job.attempts_made,
                stall_count=job.stall_count + 1,
            )
            return dead is not None

        recovered = await self._storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token=job.lease_token,
            changes={
                "state": JobState.WAITING,
                "stall_count": job.stall_count + 1,
                "lease_token": None,
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": now,
            },
            enqueue=True,
        )
        if recovered is None:
            return False

        logger.warning(
            "Job lease expired, returned to waiting",
            extra={
                "job_id": str(job.id),
                "worker_id": job.lease_owner,
                "stall_count": recovered.stall_count,
            }
        )
        self._events.publish(JobEvent.job_stalled(job.id, recovered.stall_count))
        await self._storage.notify_ready()
        return True

    async def _discard_cancelled(self, job: JobRecord, now: datetime) -> bool:
        # Leave ACTIVE first so the delete cannot hit a re-leased job
        released = await self._storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token=job.lease_token,
            changes={
                "state": JobState.WAITING,
                "lease_token": None,
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": now,
            },
        )
        if released is None:
            return False
        if not await self._storage.delete_job(job.id, expected_states=(JobState.WAITING,)):
            return False

        logger.info("Discarded cancelled job after lease expiry", extra={"job_id": str(job.id)})
        self._events.publish(JobEvent.job_removed(job.id, "cancelled"))
        await self._scheduler.release_dependents(job.id)
        return True

    async def force_expire(self, job_id: UUID) -> JobRecord:
        """
        Expire an active job's lease so the next sweep reclaims it.

        Raises:
            NotFound: If the job does not exist.
            InvalidState: If the job is not active.
        """
        job = await self._storage.get_job(job_id)
        if job is None:
            raise NotFound("job", job_id)
        if job.state != JobState.ACTIVE:
            raise InvalidState(job_id, job.state, "force_expire")

        now = self._clock()
        updated = await self._storage.compare_and_set(
            job_id,
            expected_state=JobState.ACTIVE,
            expected_token=job.lease_token,
            # strictly in the past so a sweep at the same instant sees it
            changes={"lease_expires_at": now - timedelta(microseconds=1), "updated_at": now},
        )
        if updated is None:
            current = await self._storage.get_job(job_id)
            if current is None:
                raise NotFound("job", job_id)
            raise InvalidState(job_id, current.state, "force_expire")

        logger.info("Lease force-expired", extra={"job_id": str(job_id)})
        return updated
