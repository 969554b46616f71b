"""
Job-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from jobengine.constants import DEFAULT_JOB_NAME, MAX_DURATION_SECONDS, BackoffType, JobState

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1


class BackoffSpec(BaseModel):
    """
    Serializable retry backoff description.

    `custom` defers to the callable registered on the retry engine.
    """

    model_config = ConfigDict(frozen=True)

    type: BackoffType
    delay: float = Field(default=1.0, ge=0, allow_inf_nan=False)
    base: float = Field(default=2.0, ge=1, allow_inf_nan=False)
    max_delay: float | None = Field(default=None, ge=0, allow_inf_nan=False)


class JobOptions(BaseModel):
    """
    Options accepted when creating a job.
    Unset values fall back to the engine settings.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(default=DEFAULT_JOB_NAME, min_length=1, max_length=255)
    priority: Annotated[StrictInt, Field(ge=INT32_MIN, le=INT32_MAX)] | None = None
    delay: float = Field(default=0.0, ge=0, le=MAX_DURATION_SECONDS, allow_inf_nan=False)
    max_attempts: Annotated[StrictInt, Field(ge=1)] | None = None
    parent_refs: tuple[UUID, ...] = ()
    backoff: BackoffSpec | None = None


@dataclass
class JobRecord:
    """
    Snapshot of a job as held by storage.

    Records handed out by storage adapters are copies; mutating one
    never changes stored state.
    """

    id: UUID
    payload: bytes
    name: str = DEFAULT_JOB_NAME
    priority: int = 0
    state: JobState = JobState.WAITING
    sequence: int | None = None
    created_at: datetime | None = None
    ready_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None
    lease_token: str | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    attempts_made: int = 0
    max_attempts: int = 3
    stall_count: int = 0
    last_error: str | None = None
    error_category: str | None = None
    parent_refs: tuple[UUID, ...] = ()
    backoff: BackoffSpec | None = None
    awaiting_parents: bool = False
    cancel_requested: bool = False
    result: bytes | None = None

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a final state."""
        return self.state in (JobState.COMPLETED, JobState.FAILED, JobState.DEAD)

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempts_made)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, name={self.name}, state={self.state}, "
            f"attempt={self.attempts_made}/{self.max_attempts})"
        )


@dataclass(frozen=True)
class JobError:
    """
    Failure reported by a worker.

    `category` is a caller-supplied classification (validation, network,
    timeout, ...) that the engine only hands to the backoff policy.
    """

    message: str
    category: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, category: str | None = None) -> "JobError":
        return cls(message=f"{type(exc).__name__}: {exc}", category=category)


@dataclass(frozen=True)
class LeasedJob:
    """A job handed to a worker together with its lease token."""

    job: JobRecord
    token: str

    @property
    def job_id(self) -> UUID:
        return self.job.id

    @property
    def expires_at(self) -> datetime | None:
        return self.job.lease_expires_at


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the lease the worker holds.
    """

    job_id: UUID
    name: str
    attempt: int
    max_attempts: int
    payload: bytes
    lease_owner: str
    lease_token: str
    lease_expires_at: datetime | None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: bytes | None = None
    error: str | None = None
    error_category: str | None = None
    retryable: bool = True
    duration_ms: float | None = None
