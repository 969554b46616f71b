"""
Storage adapter interface.

The engine keeps no authoritative state of its own: every mutation goes
through one of these primitives, and each primitive is atomic. Conditional
updates (compare-and-set on state and lease token) are what make concurrent
acquire, complete, fail and stall sweeps safe.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from jobengine.constants import JobState
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.job import JobRecord

# Fields a conditional update may change
MUTABLE_FIELDS = frozenset(
    {
        "payload",
        "state",
        "ready_at",
        "updated_at",
        "finished_at",
        "lease_token",
        "lease_owner",
        "lease_expires_at",
        "attempts_made",
        "stall_count",
        "last_error",
        "error_category",
        "awaiting_parents",
        "cancel_requested",
        "result",
    }
)


class StorageAdapter(ABC):
    """
    Atomic storage primitives used by the engine.

    Ordering contracts:
    - scan_ready: WAITING jobs by (priority desc, sequence asc)
    - scan_due: DELAYED jobs not awaiting parents with ready_at <= now,
      by (ready_at asc, id asc)
    - scan_expired: ACTIVE jobs with lease_expires_at < now by lease_expires_at
    """

    def __init__(self) -> None:
        self._ready_signal = asyncio.Condition()

    @abstractmethod
    async def insert_job(self, job: JobRecord, *, enqueue: bool) -> JobRecord:
        """
        Persist a new job and its dependency edges.

        Args:
            job: The job to store.
            enqueue: Assign a fresh ready-set sequence number.

        Returns:
            The stored job.
        """

    @abstractmethod
    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """Get a job by ID."""

    @abstractmethod
    async def get_jobs(self, job_ids: Sequence[UUID]) -> list[JobRecord]:
        """Get the jobs that exist among the given IDs."""

    @abstractmethod
    async def compare_and_set(
        self,
        job_id: UUID,
        *,
        expected_state: JobState,
        changes: Mapping[str, Any],
        expected_token: str | None = None,
        enqueue: bool = False,
    ) -> JobRecord | None:
        """
        Apply changes only if the job is still in the expected state.

        Args:
            job_id: The job UUID.
            expected_state: State the job must currently be in.
            changes: Field values to write (see MUTABLE_FIELDS).
            expected_token: When given, the stored lease token must match.
            enqueue: Assign a fresh ready-set sequence number.

        Returns:
            The updated job, or None if the condition did not hold.
        """

    @abstractmethod
    async def delete_job(
        self,
        job_id: UUID,
        *,
        expected_states: Collection[JobState],
    ) -> bool:
        """Delete a job if its state is one of expected_states."""

    @abstractmethod
    async def scan_ready(self, limit: int) -> list[JobRecord]:
        """List dispatch candidates in ready-set order."""

    @abstractmethod
    async def scan_due(self, now: datetime, limit: int) -> list[JobRecord]:
        """List delayed jobs whose ready_at has elapsed."""

    @abstractmethod
    async def scan_expired(self, now: datetime, limit: int) -> list[JobRecord]:
        """List active jobs whose lease has expired."""

    @abstractmethod
    async def find_dependents(self, parent_id: UUID) -> list[JobRecord]:
        """List jobs that reference parent_id in their parent_refs."""

    @abstractmethod
    async def dead_letter(
        self,
        job_id: UUID,
        *,
        expected_state: JobState,
        expected_token: str | None,
        changes: Mapping[str, Any],
        entry: DeadLetterEntry,
    ) -> JobRecord | None:
        """
        Append a dead-letter entry and transition the job in one step.

        If the append fails nothing is changed and the error propagates.

        Returns:
            The updated job, or None if the condition did not hold.
        """

    @abstractmethod
    async def list_dead_letters(self, limit: int, offset: int) -> list[DeadLetterEntry]:
        """List dead-letter entries in append order."""

    @abstractmethod
    async def get_dead_letter(self, entry_id: UUID) -> DeadLetterEntry | None:
        """Get a dead-letter entry by ID."""

    @abstractmethod
    async def count_by_state(self) -> dict[JobState, int]:
        """Get job counts by state."""

    async def close(self) -> None:
        """Release adapter resources."""

    async def notify_ready(self) -> None:
        """Wake up callers blocked in wait_for_ready."""
        async with self._ready_signal:
            self._ready_signal.notify_all()

    async def wait_for_ready(self, timeout: float) -> bool:
        """
        Block until notify_ready is called or the timeout elapses.

        Notifications only reach waiters in this process; callers must
        fall back to polling for jobs made ready elsewhere.

        Returns:
            True if notified, False on timeout.
        """
        async with self._ready_signal:
            try:
                await asyncio.wait_for(self._ready_signal.wait(), timeout)
            except TimeoutError:
                return False
        return True


def check_changes(changes: Mapping[str, Any]) -> None:
    """Reject updates to fields outside MUTABLE_FIELDS."""
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
