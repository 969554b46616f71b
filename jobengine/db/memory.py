"""
In-memory storage adapter.

Keeps jobs, dependency edges and dead letters in Python dictionaries
guarded by a single asyncio.Lock. Suitable for tests, development and
single-process deployments where durability is not required.
"""

import asyncio
from collections import defaultdict
from collections.abc import Collection, Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import UUID

from jobengine.constants import JobState
from jobengine.db.base import StorageAdapter, check_changes
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.job import JobRecord


class InMemoryStorage(StorageAdapter):
    """
    Volatile StorageAdapter implementation.

    Every primitive runs entirely under the lock, which gives the same
    all-or-nothing behaviour the SQL adapter gets from transactions.
    """

    def __init__(self) -> None:
        super().__init__()
        self._jobs: dict[UUID, JobRecord] = {}
        # parent id -> ids of jobs that depend on it
        self._children: dict[UUID, set[UUID]] = defaultdict(set)
        self._dead_letters: list[DeadLetterEntry] = []
        self._sequence = 0
        self._lock = asyncio.Lock()

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _append_dead_letter(self, entry: DeadLetterEntry) -> None:
        self._dead_letters.append(entry)

    async def insert_job(self, job: JobRecord, *, enqueue: bool) -> JobRecord:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            stored = replace(job)
            if enqueue:
                stored.sequence = self._next_sequence()
            self._jobs[stored.id] = stored
            for parent_id in stored.parent_refs:
                self._children[parent_id].add(stored.id)
            return replace(stored)

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    async def get_jobs(self, job_ids: Sequence[UUID]) -> list[JobRecord]:
        async with self._lock:
            return [replace(self._jobs[i]) for i in job_ids if i in self._jobs]

    async def compare_and_set(
        self,
        job_id: UUID,
        *,
        expected_state: JobState,
        changes: Mapping[str, Any],
        expected_token: str | None = None,
        enqueue: bool = False,
    ) -> JobRecord | None:
        check_changes(changes)
        async with self._lock:
            job = self._matching(job_id, expected_state, expected_token)
            if job is None:
                return None
            for key, value in changes.items():
                setattr(job, key, value)
            if enqueue:
                job.sequence = self._next_sequence()
            return replace(job)

    async def delete_job(
        self,
        job_id: UUID,
        *,
        expected_states: Collection[JobState],
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state not in expected_states:
                return False
            del self._jobs[job_id]
            for parent_id in job.parent_refs:
                children = self._children.get(parent_id)
                if children is not None:
                    children.discard(job_id)
                    if not children:
                        del self._children[parent_id]
            return True

    async def scan_ready(self, limit: int) -> list[JobRecord]:
        async with self._lock:
            ready = [j for j in self._jobs.values() if j.state == JobState.WAITING]
            ready.sort(key=lambda j: (-j.priority, j.sequence or 0))
            return [replace(j) for j in ready[:limit]]

    async def scan_due(self, now: datetime, limit: int) -> list[JobRecord]:
        async with self._lock:
            due = [
                j
                for j in self._jobs.values()
                if j.state == JobState.DELAYED
                and not j.awaiting_parents
                and j.ready_at is not None
                and j.ready_at <= now
            ]
            due.sort(key=lambda j: (j.ready_at, j.id))
            return [replace(j) for j in due[:limit]]

    async def scan_expired(self, now: datetime, limit: int) -> list[JobRecord]:
        async with self._lock:
            expired = [
                j
                for j in self._jobs.values()
                if j.state == JobState.ACTIVE
                and j.lease_expires_at is not None
                and j.lease_expires_at < now
            ]
            expired.sort(key=lambda j: (j.lease_expires_at, j.id))
            return [replace(j) for j in expired[:limit]]

    async def find_dependents(self, parent_id: UUID) -> list[JobRecord]:
        async with self._lock:
            child_ids = sorted(self._children.get(parent_id, ()))
            return [replace(self._jobs[i]) for i in child_ids if i in self._jobs]

    async def dead_letter(
        self,
        job_id: UUID,
        *,
        expected_state: JobState,
        expected_token: str | None,
        changes: Mapping[str, Any],
        entry: DeadLetterEntry,
    ) -> JobRecord | None:
        check_changes(changes)
        async with self._lock:
            job = self._matching(job_id, expected_state, expected_token)
            if job is None:
                return None
            # Append first: a failed append leaves the job untouched
            self._append_dead_letter(entry)
            for key, value in changes.items():
                setattr(job, key, value)
            return replace(job)

    async def list_dead_letters(self, limit: int, offset: int) -> list[DeadLetterEntry]:
        async with self._lock:
            return list(self._dead_letters[offset : offset + limit])

    async def get_dead_letter(self, entry_id: UUID) -> DeadLetterEntry | None:
        async with self._lock:
            for entry in self._dead_letters:
                if entry.id == entry_id:
                    return entry
            return None

    async def count_by_state(self) -> dict[JobState, int]:
        async with self._lock:
            counts: dict[JobState, int] = {}
            for job in self._jobs.values():
                counts[job.state] = counts.get(job.state, 0) + 1
            return counts

    def _matching(
        self,
        job_id: UUID,
        expected_state: JobState,
        expected_token: str | None,
    ) -> JobRecord | None:
        job = self._jobs.get(job_id)
        if job is None or job.state != expected_state:
            return None
        if expected_token is not None and job.lease_token != expected_token:
            return None
        return job
