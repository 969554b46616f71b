"""
Engine error taxonomy.

Lease and state violations are raised synchronously to the caller.
Storage failures surface as StorageUnavailable and are never retried here.
"""

from uuid import UUID


class JobQueueError(Exception):
    """Base class for all engine errors."""


class NotFound(JobQueueError):
    """Unknown job or dead-letter id."""

    def __init__(self, kind: str, ident: UUID | str):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class InvalidLease(JobQueueError):
    """
    Stale or absent lease token, or the job is no longer active.

    A worker receiving this must treat its result as discarded.
    """

    def __init__(self, job_id: UUID, reason: str = "lease is not held"):
        super().__init__(f"Invalid lease for job {job_id}: {reason}")
        self.job_id = job_id
        self.reason = reason


class InvalidState(JobQueueError):
    """Operation is illegal for the job's current state."""

    def __init__(self, job_id: UUID, state: str, operation: str):
        super().__init__(f"Cannot {operation} job {job_id} in state {state}")
        self.job_id = job_id
        self.state = state
        self.operation = operation


class InvalidJobOptions(JobQueueError):
    """Rejected create/update arguments."""


class DependencyUnsatisfied(JobQueueError):
    """A job with incomplete parents reached the dispatch path."""

    def __init__(self, job_id: UUID, pending: list[UUID]):
        super().__init__(f"Job {job_id} has {len(pending)} incomplete parent(s)")
        self.job_id = job_id
        self.pending = pending


class StorageUnavailable(JobQueueError):
    """The storage adapter failed; no state change was made."""
