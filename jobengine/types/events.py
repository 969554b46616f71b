"""
Event type definitions for the engine's notification channel.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobengine.clock import utcnow
from jobengine.constants import (
    EVENT_JOB_ACTIVE,
    EVENT_JOB_COMPLETED,
    EVENT_JOB_CREATED,
    EVENT_JOB_DEAD,
    EVENT_JOB_FAILED,
    EVENT_JOB_PROMOTED,
    EVENT_JOB_REMOVED,
    EVENT_JOB_REQUEUED,
    EVENT_JOB_RETRYING,
    EVENT_JOB_STALLED,
    DeadLetterReason,
    JobState,
)


class JobEvent(BaseModel):
    """
    Event emitted when job state changes.
    Published to the event channel; subscribers pull them.
    """

    event_type: str
    job_id: UUID
    state: JobState | None
    timestamp: datetime
    data: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in (EVENT_JOB_COMPLETED, EVENT_JOB_FAILED, EVENT_JOB_DEAD)

    @classmethod
    def job_created(cls, job_id: UUID, name: str, state: JobState) -> "JobEvent":
        """Create a job created event."""
        return cls(
            event_type=EVENT_JOB_CREATED,
            job_id=job_id,
            state=state,
            timestamp=utcnow(),
            data={"name": name},
        )

    @classmethod
    def job_active(cls, job_id: UUID, worker_id: str, attempt: int) -> "JobEvent":
        """Create a lease granted event."""
        return cls(
            event_type=EVENT_JOB_ACTIVE,
            job_id=job_id,
            state=JobState.ACTIVE,
            timestamp=utcnow(),
            data={"worker_id": worker_id, "attempt": attempt},
        )

    @classmethod
    def job_completed(cls, job_id: UUID) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=EVENT_JOB_COMPLETED,
            job_id=job_id,
            state=JobState.COMPLETED,
            timestamp=utcnow(),
        )

    @classmethod
    def job_retrying(
        cls,
        job_id: UUID,
        error: str,
        attempt: int,
        delay_seconds: float,
    ) -> "JobEvent":
        """Create a job scheduled for retry event."""
        return cls(
            event_type=EVENT_JOB_RETRYING,
            job_id=job_id,
            state=JobState.DELAYED,
            timestamp=utcnow(),
            data={"error": error, "attempt": attempt, "delay_seconds": delay_seconds},
        )

    @classmethod
    def job_failed(cls, job_id: UUID, error: str, attempt: int) -> "JobEvent":
        """Create a failed (cancelled, not retried) event."""
        return cls(
            event_type=EVENT_JOB_FAILED,
            job_id=job_id,
            state=JobState.FAILED,
            timestamp=utcnow(),
            data={"error": error, "attempt": attempt},
        )

    @classmethod
    def job_dead(
        cls,
        job_id: UUID,
        dead_letter_id: UUID,
        reason: DeadLetterReason,
        error: str | None,
        attempts: int,
    ) -> "JobEvent":
        """Create a job moved to dead-letter event."""
        return cls(
            event_type=EVENT_JOB_DEAD,
            job_id=job_id,
            state=JobState.DEAD,
            timestamp=utcnow(),
            data={
                "dead_letter_id": str(dead_letter_id),
                "reason": reason.value,
                "error": error,
                "total_attempts": attempts,
            },
        )

    @classmethod
    def job_stalled(cls, job_id: UUID, stall_count: int) -> "JobEvent":
        """Create a lease expired event."""
        return cls(
            event_type=EVENT_JOB_STALLED,
            job_id=job_id,
            state=JobState.WAITING,
            timestamp=utcnow(),
            data={"stall_count": stall_count},
        )

    @classmethod
    def job_promoted(cls, job_id: UUID) -> "JobEvent":
        """Create a delayed job promoted event."""
        return cls(
            event_type=EVENT_JOB_PROMOTED,
            job_id=job_id,
            state=JobState.WAITING,
            timestamp=utcnow(),
        )

    @classmethod
    def job_removed(cls, job_id: UUID, reason: str) -> "JobEvent":
        """Create a job removed event."""
        return cls(
            event_type=EVENT_JOB_REMOVED,
            job_id=job_id,
            state=None,
            timestamp=utcnow(),
            data={"reason": reason},
        )

    @classmethod
    def job_requeued(cls, job_id: UUID, dead_letter_id: UUID) -> "JobEvent":
        """Create a dead letter requeued event."""
        return cls(
            event_type=EVENT_JOB_REQUEUED,
            job_id=job_id,
            state=JobState.WAITING,
            timestamp=utcnow(),
            data={"dead_letter_id": str(dead_letter_id)},
        )
