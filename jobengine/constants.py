"""
Application constants.
Centralized location for all constant values used across the engine.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (lease granted)
    - DELAYED -> WAITING (ready_at elapsed, parents completed)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> DELAYED (retry with backoff)
    - ACTIVE -> DEAD (attempts exhausted, non-retryable, stall limit)
    - ACTIVE -> FAILED (failure reported for a cancelled job)
    - ACTIVE -> WAITING (lease expired - stall recovery)
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.DEAD})

# States a job may be removed from without touching a lease
REMOVABLE_STATES = frozenset(
    {
        JobState.WAITING,
        JobState.DELAYED,
        JobState.COMPLETED,
        JobState.FAILED,
        JobState.DEAD,
    }
)


class DeadLetterReason(StrEnum):
    """Why a job ended up in the dead-letter store."""

    EXHAUSTED = "exhausted"
    NON_RETRYABLE = "non-retryable"
    EXCEEDED_STALL_LIMIT = "exceeded-stall-limit"


class BackoffType(StrEnum):
    """Retry delay strategies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    CUSTOM = "custom"


# Default values
DEFAULT_PRIORITY = 0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_STALLED_COUNT = 1
DEFAULT_LEASE_DURATION_SECONDS = 30.0
DEFAULT_JOB_NAME = "default"
STALL_LIMIT_ERROR = "exceeded stall limit"

# Upper bound on any computed retry delay (30 days)
MAX_RETRY_DELAY_SECONDS = 30 * 24 * 3600.0

# Upper bound on a creation delay, lease duration or lease extension
MAX_DURATION_SECONDS = MAX_RETRY_DELAY_SECONDS

# Job ids remembered per repeat
REPEAT_HISTORY_SIZE = 100

# Storage counter holding the ready-set insertion sequence
READY_SEQUENCE_COUNTER = "ready_sequence"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_CREATED = "jobs_created_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOBS_RETRIED = "jobs_retried_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_LEASE_STALLED = "lease_stalled_total"
METRIC_JOBS_PROMOTED = "jobs_promoted_total"
METRIC_DEAD_LETTERS = "dead_letters_total"

# Trace span names
SPAN_CREATE_JOB = "create_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_COMPLETE_JOB = "complete_job"
SPAN_FAIL_JOB = "fail_job"
SPAN_SWEEP = "sweep"

# Event types
EVENT_JOB_CREATED = "job.created"
EVENT_JOB_ACTIVE = "job.active"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_JOB_RETRYING = "job.retrying"
EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_DEAD = "job.dead"
EVENT_JOB_STALLED = "job.stalled"
EVENT_JOB_PROMOTED = "job.promoted"
EVENT_JOB_REMOVED = "job.removed"
EVENT_JOB_REQUEUED = "job.requeued"
