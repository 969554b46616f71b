"""
Retry/backoff engine.

Decides, for a failure reported on an active job, whether the job goes
back to the delay set or to the dead-letter store, and applies that
transition. Error categories are opaque keys handed to the backoff
policy; the engine never inspects error content.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from jobengine.clock import Clock, utcnow
from jobengine.constants import MAX_RETRY_DELAY_SECONDS, DeadLetterReason, JobState
from jobengine.db.base import StorageAdapter
from jobengine.engine.backoff import BackoffPolicy, policy_from_spec
from jobengine.engine.dead_letter import DeadLetterStore
from jobengine.engine.events import EventChannel
from jobengine.observability.metrics import MetricsCollector
from jobengine.types.events import JobEvent
from jobengine.types.job import JobError, JobRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failure: retry after `delay` or dead-letter for `reason`."""

    attempts_made: int
    retry: bool
    delay: float = 0.0
    reason: DeadLetterReason | None = None


class RetryEngine:
    """Applies retry policy to failed jobs."""

    def __init__(
        self,
        storage: StorageAdapter,
        dead_letters: DeadLetterStore,
        events: EventChannel,
        metrics: MetricsCollector,
        default_policy: BackoffPolicy,
        custom_policy: BackoffPolicy | None = None,
        clock: Clock = utcnow,
    ):
        """
        Args:
            storage: Storage adapter.
            dead_letters: Where terminal failures go.
            events: Event channel for retry notifications.
            metrics: Metrics collector.
            default_policy: Policy for jobs without their own backoff spec.
            custom_policy: Policy used by jobs whose backoff type is `custom`.
            clock: Time source.
        """
        self._storage = storage
        self._dead_letters = dead_letters
        self._events = events
        self._metrics = metrics
        self._default_policy = default_policy
        self.custom_policy = custom_policy
        self._clock = clock

    def policy_for(self, job: JobRecord) -> BackoffPolicy:
        if job.backoff is None:
            return self._default_policy
        return policy_from_spec(job.backoff, self.custom_policy)

    def decide(self, job: JobRecord, error: JobError, retryable: bool = True) -> RetryDecision:
        """
        Compute the outcome of one more failed attempt.

        Order of checks: attempts exhausted, caller marked the error
        non-retryable, then the backoff policy (which may refuse a retry).
        """
        attempts = job.attempts_made + 1

        if attempts >= job.max_attempts:
            return RetryDecision(attempts, retry=False, reason=DeadLetterReason.EXHAUSTED)
        if not retryable:
            return RetryDecision(attempts, retry=False, reason=DeadLetterReason.NON_RETRYABLE)

        delay = self.policy_for(job).next_delay(attempts, error)
        if delay is None:
            return RetryDecision(attempts, retry=False, reason=DeadLetterReason.NON_RETRYABLE)
        return RetryDecision(attempts, retry=True, delay=min(delay, MAX_RETRY_DELAY_SECONDS))

    async def handle_failure(
        self,
        job: JobRecord,
        token: str,
        error: JobError,
        retryable: bool = True,
    ) -> JobRecord | None:
        """
        Move a failed active job to DELAYED or DEAD.

        Returns:
            The updated job, or None if the lease was no longer held.
        """
        decision = self.decide(job, error, retryable)

        if not decision.retry:
            return await self._dead_letters.record(
                job,
                token=token,
                reason=decision.reason,
                error=error.message,
                error_category=error.category,
                attempts_made=decision.attempts_made,
            )

        now = self._clock()
        updated = await self._storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token=token,
            changes={
                "state": JobState.DELAYED,
                "ready_at": now + timedelta(seconds=decision.delay),
                "attempts_made": decision.attempts_made,
                "last_error": error.message,
                "error_category": error.category,
                "lease_token": None,
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": now,
            },
        )
        if updated is None:
            return None

        logger.info(
            "Job scheduled for retry",
            extra={
                "job_id": str(job.id),
                "attempt": decision.attempts_made,
                "delay_seconds": decision.delay,
                "error_category": error.category,
            }
        )
        self._metrics.record_job_retried(job.name)
        self._events.publish(
            JobEvent.job_retrying(job.id, error.message, decision.attempts_made, decision.delay)
        )
        if decision.delay <= 0:
            await self._storage.notify_ready()
        return updated
