"""
JobQueue: the engine's public interface.

Wires the job store, scheduler, lease manager, retry engine and
dead-letter store over one storage adapter. Producers call `create`,
workers call `acquire`/`renew`/`complete`/`fail`, operators use the
dead-letter and administrative operations.
"""

import logging
from collections.abc import Collection, Iterable
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from jobengine.clock import Clock, utcnow
from jobengine.config import Settings, get_settings
from jobengine.constants import DEFAULT_JOB_NAME, BackoffType, JobState
from jobengine.db.base import StorageAdapter
from jobengine.engine.backoff import (
    BackoffFunction,
    BackoffPolicy,
    CustomBackoff,
    policy_from_settings,
)
from jobengine.engine.dead_letter import DeadLetterStore
from jobengine.engine.events import EventChannel, Subscription
from jobengine.engine.lease import LeaseManager
from jobengine.engine.retry import RetryEngine
from jobengine.engine.scheduler import ReadyScheduler
from jobengine.engine.store import JobStore
from jobengine.errors import InvalidJobOptions
from jobengine.observability.metrics import MetricsCollector, get_metrics
from jobengine.sweeper.sweeper import Sweeper
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.job import BackoffSpec, JobError, JobOptions, JobRecord, LeasedJob

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Persistent priority job queue.

    Usage:
        async with JobQueue(InMemoryStorage()) as queue:
            job_id = await queue.create(b"payload", priority=5)
            leased = await queue.acquire("worker-1", lease_duration=30)
            await queue.complete(leased.job_id, leased.token)
    """

    def __init__(
        self,
        storage: StorageAdapter,
        settings: Settings | None = None,
        *,
        clock: Clock = utcnow,
        events: EventChannel | None = None,
        metrics: MetricsCollector | None = None,
        custom_backoff: BackoffPolicy | BackoffFunction | None = None,
    ):
        """
        Args:
            storage: Storage adapter holding all queue state.
            settings: Engine settings, defaults to get_settings().
            clock: Time source returning naive UTC datetimes.
            events: Event channel, a new one by default.
            metrics: Metrics collector, the process-wide one by default.
            custom_backoff: Policy (or function of attempts and error) used
                by jobs with a `custom` backoff spec.
        """
        self.settings = settings or get_settings()
        self.storage = storage
        self.events = events or EventChannel(self.settings.event_buffer_size)
        self.metrics = metrics or get_metrics()
        self.clock = clock

        custom = custom_backoff
        if custom is not None and not isinstance(custom, BackoffPolicy):
            custom = CustomBackoff(custom)
        if self.settings.backoff_type == BackoffType.CUSTOM:
            if custom is None:
                raise ValueError("backoff_type is custom but no custom_backoff was given")
            default_policy = custom
        else:
            default_policy = policy_from_settings(self.settings)

        batch_size = self.settings.sweep_batch_size
        self.dead_letters = DeadLetterStore(storage, self.events, self.metrics, clock)
        self.scheduler = ReadyScheduler(storage, self.events, self.metrics, clock, batch_size)
        self.leases = LeaseManager(
            storage,
            self.scheduler,
            self.dead_letters,
            self.events,
            self.metrics,
            clock,
            max_stalled_count=self.settings.max_stalled_count,
            poll_interval=self.settings.acquire_poll_interval_seconds,
            batch_size=batch_size,
        )
        self.retry = RetryEngine(
            storage,
            self.dead_letters,
            self.events,
            self.metrics,
            default_policy,
            custom,
            clock,
        )
        self.store = JobStore(
            storage,
            self.scheduler,
            self.leases,
            self.retry,
            self.events,
            self.metrics,
            self.settings,
            clock,
        )
        self._sweeper: Sweeper | None = None

    # Producer API

    async def create(
        self,
        payload: bytes,
        *,
        name: str = DEFAULT_JOB_NAME,
        priority: int | None = None,
        delay: float = 0.0,
        max_attempts: int | None = None,
        parent_refs: Iterable[UUID] = (),
        backoff: BackoffSpec | dict[str, Any] | None = None,
    ) -> UUID:
        """
        Create a job.

        Args:
            payload: Opaque job body.
            name: Handler routing key.
            priority: Higher runs first. Defaults to settings.default_priority.
            delay: Seconds before the job becomes ready.
            max_attempts: Attempts before dead-lettering, at least 1.
            parent_refs: Jobs that must complete before this one runs.
            backoff: Per-job retry backoff overriding the default policy.

        Returns:
            The new job's id.

        Raises:
            InvalidJobOptions: If an option is out of range.
            NotFound: If a parent does not exist.
        """
        try:
            options = JobOptions(
                name=name,
                priority=priority,
                delay=delay,
                max_attempts=max_attempts,
                parent_refs=tuple(parent_refs),
                backoff=backoff,
            )
        except ValidationError as e:
            raise InvalidJobOptions(str(e)) from e
        return await self.store.create(payload, options)

    # Worker API

    async def acquire(
        self,
        worker_id: str,
        lease_duration: float | None = None,
        block_timeout: float | None = None,
    ) -> LeasedJob | None:
        """Lease the best ready job, optionally waiting up to block_timeout seconds."""
        if lease_duration is None:
            lease_duration = self.settings.default_lease_duration_seconds
        return await self.leases.acquire(worker_id, lease_duration, block_timeout)

    async def renew(self, job_id: UUID, token: str, extension: float | None = None) -> JobRecord:
        if extension is None:
            extension = self.settings.default_lease_duration_seconds
        return await self.leases.renew(job_id, token, extension)

    async def complete(self, job_id: UUID, token: str, result: bytes | None = None) -> JobRecord:
        return await self.store.mark_completed(job_id, token, result)

    async def fail(
        self,
        job_id: UUID,
        token: str,
        error: JobError | str,
        retryable: bool = True,
    ) -> JobRecord:
        return await self.store.mark_failed(job_id, token, error, retryable)

    # Administration

    async def get_job(self, job_id: UUID) -> JobRecord:
        return await self.store.get(job_id)

    async def remove(self, job_id: UUID) -> None:
        await self.store.remove(job_id)

    async def cancel(self, job_id: UUID) -> bool:
        return await self.store.cancel(job_id)

    async def update_payload(self, job_id: UUID, payload: bytes) -> JobRecord:
        return await self.store.update_payload(job_id, payload)

    async def force_expire(self, job_id: UUID) -> JobRecord:
        return await self.leases.force_expire(job_id)

    async def counts(self) -> dict[JobState, int]:
        return await self.store.counts()

    async def promote_delayed(self) -> int:
        """Promote every due delayed job now."""
        return await self.scheduler.promote_due()

    async def sweep_stalled(self) -> int:
        """Reclaim every expired lease now."""
        return await self.leases.sweep_stalled()

    # Dead letters

    async def list_dead_letters(self, limit: int = 50, offset: int = 0) -> list[DeadLetterEntry]:
        return await self.dead_letters.list_entries(limit, offset)

    async def get_dead_letter(self, entry_id: UUID) -> DeadLetterEntry:
        return await self.dead_letters.get(entry_id)

    async def requeue(self, entry_id: UUID) -> UUID:
        return await self.dead_letters.requeue(entry_id)

    # Events

    def subscribe(self, event_types: Collection[str] | None = None) -> Subscription:
        return self.events.subscribe(event_types)

    # Lifecycle

    async def start(self) -> None:
        """Run the delay and stall sweeps in the background."""
        if self._sweeper is None:
            self._sweeper = Sweeper(
                self,
                delay_interval=self.settings.delay_sweep_interval_seconds,
                stall_interval=self.settings.stall_sweep_interval_seconds,
            )
        self._sweeper.start()

    async def stop(self) -> None:
        """Stop background sweeps. Storage is left open."""
        if self._sweeper is not None:
            await self._sweeper.stop()

    async def close(self) -> None:
        await self.stop()
        await self.storage.close()

    async def __aenter__(self) -> "JobQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
