"""
SQLAlchemy database models.
Defines the jobs, dependency, dead-letter and counter tables.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobengine.constants import DeadLetterReason, JobState
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.job import BackoffSpec, JobRecord

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates on this table.

    Key constraints:
    - state transitions follow the engine's state machine
    - lease_token is set only while the job is active
    - sequence orders jobs of equal priority in the ready set
    """

    __tablename__ = "jobs"

    # Primary key (time-ordered UUID)
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    # State and ordering
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="job_state", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobState.WAITING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sequence: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Scheduling
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ready_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Lease management
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Retry tracking
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    stall_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    backoff: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Dependencies (mirrored by job_dependencies for reverse lookups)
    parent_refs: Mapped[list] = mapped_column(JSONVariant, nullable=False, default=list)

    awaiting_parents: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    result: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    __table_args__ = (
        # Ready set: priority desc, sequence asc
        Index("ix_jobs_ready", "state", "priority", "sequence"),
        # Delay set: ready_at asc, id asc
        Index("ix_jobs_delayed", "state", "ready_at", "id"),
        # Stall sweep
        Index("ix_jobs_lease_expiry", "state", "lease_expires_at"),
    )

    def to_record(self) -> JobRecord:
        """Convert the row to a detached JobRecord."""
        return JobRecord(
            id=self.id,
            name=self.name,
            payload=self.payload,
            priority=self.priority,
            state=JobState(self.state),
            sequence=self.sequence,
            created_at=self.created_at,
            ready_at=self.ready_at,
            updated_at=self.updated_at,
            finished_at=self.finished_at,
            lease_token=self.lease_token,
            lease_owner=self.lease_owner,
            lease_expires_at=self.lease_expires_at,
            attempts_made=self.attempts_made,
            max_attempts=self.max_attempts,
            stall_count=self.stall_count,
            last_error=self.last_error,
            error_category=self.error_category,
            parent_refs=tuple(UUID(p) for p in self.parent_refs or ()),
            backoff=BackoffSpec.model_validate(self.backoff) if self.backoff else None,
            awaiting_parents=self.awaiting_parents,
            cancel_requested=self.cancel_requested,
            result=self.result,
        )

    @classmethod
    def from_record(cls, job: JobRecord) -> "Job":
        """Build a new row from a JobRecord."""
        return cls(
            id=job.id,
            name=job.name,
            payload=job.payload,
            priority=job.priority,
            state=job.state,
            sequence=job.sequence,
            created_at=job.created_at,
            ready_at=job.ready_at,
            updated_at=job.updated_at,
            finished_at=job.finished_at,
            lease_token=job.lease_token,
            lease_owner=job.lease_owner,
            lease_expires_at=job.lease_expires_at,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            stall_count=job.stall_count,
            last_error=job.last_error,
            error_category=job.error_category,
            parent_refs=[str(p) for p in job.parent_refs],
            backoff=job.backoff.model_dump(mode="json") if job.backoff else None,
            awaiting_parents=job.awaiting_parents,
            cancel_requested=job.cancel_requested,
            result=job.result,
        )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, name={self.name}, "
            f"state={self.state}, attempt={self.attempts_made}/{self.max_attempts})"
        )


class JobDependency(Base):
    """Edge from a parent job to a child waiting on it."""

    __tablename__ = "job_dependencies"

    parent_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    child_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, index=True)


class DeadLetter(Base):
    """Append-only record of a terminally failed job."""

    __tablename__ = "dead_letters"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    job_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False)
    stall_count: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[DeadLetterReason] = mapped_column(
        Enum(
            DeadLetterReason,
            name="dead_letter_reason",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    backoff: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)

    def to_entry(self) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=self.id,
            job_id=self.job_id,
            name=self.name,
            payload=self.payload,
            priority=self.priority,
            max_attempts=self.max_attempts,
            attempts_made=self.attempts_made,
            stall_count=self.stall_count,
            reason=DeadLetterReason(self.reason),
            last_error=self.last_error,
            error_category=self.error_category,
            created_at=self.created_at,
            backoff=BackoffSpec.model_validate(self.backoff) if self.backoff else None,
        )

    @classmethod
    def from_entry(cls, entry: DeadLetterEntry) -> "DeadLetter":
        return cls(
            id=entry.id,
            job_id=entry.job_id,
            name=entry.name,
            payload=entry.payload,
            priority=entry.priority,
            max_attempts=entry.max_attempts,
            attempts_made=entry.attempts_made,
            stall_count=entry.stall_count,
            reason=entry.reason,
            last_error=entry.last_error,
            error_category=entry.error_category,
            created_at=entry.created_at,
            backoff=entry.backoff.model_dump(mode="json") if entry.backoff else None,
        )


class QueueCounter(Base):
    """Named monotonic counters (ready-set insertion sequence)."""

    __tablename__ = "queue_counters"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
