"""
SQL storage adapter.
Implements the engine's atomic primitives as conditional statements
against the jobs table, one transaction per primitive.
"""

import logging
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobengine.constants import READY_SEQUENCE_COUNTER, JobState
from jobengine.db.base import StorageAdapter, check_changes
from jobengine.db.models import DeadLetter, Job, JobDependency, QueueCounter
from jobengine.errors import StorageUnavailable
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.job import JobRecord

logger = logging.getLogger(__name__)


class SQLStorage(StorageAdapter):
    """
    StorageAdapter backed by SQLAlchemy (PostgreSQL in production).

    Implements atomic operations for:
    - Job insertion with dependency edges
    - Compare-and-set transitions guarded by state and lease token
    - Dead-lettering as a single transaction
    - Ordered scans for the ready set, delay set and expired leases
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the adapter with a session factory.

        Args:
            session_factory: Factory producing async database sessions.
        """
        super().__init__()
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Run the body in one transaction.

        Database errors roll the transaction back and surface as
        StorageUnavailable.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error("Storage operation failed", extra={"error": str(e)})
            raise StorageUnavailable(str(e)) from e

    async def _next_sequence(self, session: AsyncSession) -> int:
        """Increment and return the ready-set sequence counter."""
        result = await session.execute(
            update(QueueCounter)
            .where(QueueCounter.name == READY_SEQUENCE_COUNTER)
            .values(value=QueueCounter.value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.add(QueueCounter(name=READY_SEQUENCE_COUNTER, value=1))
            await session.flush()
            return 1
        value = await session.scalar(
            select(QueueCounter.value).where(QueueCounter.name == READY_SEQUENCE_COUNTER)
        )
        return int(value)

    async def _load(self, session: AsyncSession, job_id: UUID) -> JobRecord | None:
        row = await session.scalar(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return row.to_record() if row is not None else None

    async def insert_job(self, job: JobRecord, *, enqueue: bool) -> JobRecord:
        async with self._transaction() as session:
            row = Job.from_record(job)
            if enqueue:
                row.sequence = await self._next_sequence(session)
            session.add(row)
            for parent_id in job.parent_refs:
                session.add(JobDependency(parent_id=parent_id, child_id=job.id))
            await session.flush()

            logger.debug(
                "Inserted job",
                extra={"job_id": str(job.id), "state": job.state.value}
            )
            return row.to_record()

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        async with self._transaction() as session:
            return await self._load(session, job_id)

    async def get_jobs(self, job_ids: Sequence[UUID]) -> list[JobRecord]:
        if not job_ids:
            return []
        async with self._transaction() as session:
            rows = await session.scalars(select(Job).where(Job.id.in_(list(job_ids))))
            return [row.to_record() for row in rows]

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
        async with self._transaction() as session:
            if not await self._conditional_update(
                session, job_id, expected_state, expected_token, changes
            ):
                return None
            if enqueue:
                sequence = await self._next_sequence(session)
                await session.execute(
                    update(Job)
                    .where(Job.id == job_id)
                    .values(sequence=sequence)
                    .execution_options(synchronize_session=False)
                )
            return await self._load(session, job_id)

    async def _conditional_update(
        self,
        session: AsyncSession,
        job_id: UUID,
        expected_state: JobState,
        expected_token: str | None,
        changes: Mapping[str, Any],
    ) -> bool:
        """UPDATE ... WHERE id, state [, lease_token]; True if a row matched."""
        conditions = [Job.id == job_id, Job.state == expected_state]
        if expected_token is not None:
            conditions.append(Job.lease_token == expected_token)

        result = await session.execute(
            update(Job)
            .where(and_(*conditions))
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_job(
        self,
        job_id: UUID,
        *,
        expected_states: Collection[JobState],
    ) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                delete(Job)
                .where(and_(Job.id == job_id, Job.state.in_(list(expected_states))))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return False
            await session.execute(
                delete(JobDependency)
                .where(JobDependency.child_id == job_id)
                .execution_options(synchronize_session=False)
            )
            return True

    async def scan_ready(self, limit: int) -> list[JobRecord]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(Job)
                .where(Job.state == JobState.WAITING)
                .order_by(Job.priority.desc(), Job.sequence.asc())
                .limit(limit)
            )
            return [row.to_record() for row in rows]

    async def scan_due(self, now: datetime, limit: int) -> list[JobRecord]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(Job)
                .where(
                    and_(
                        Job.state == JobState.DELAYED,
                        Job.awaiting_parents.is_(False),
                        Job.ready_at <= now,
                    )
                )
                .order_by(Job.ready_at.asc(), Job.id.asc())
                .limit(limit)
            )
            return [row.to_record() for row in rows]

    async def scan_expired(self, now: datetime, limit: int) -> list[JobRecord]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(Job)
                .where(and_(Job.state == JobState.ACTIVE, Job.lease_expires_at < now))
                .order_by(Job.lease_expires_at.asc(), Job.id.asc())
                .limit(limit)
            )
            return [row.to_record() for row in rows]

    async def find_dependents(self, parent_id: UUID) -> list[JobRecord]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(Job)
                .join(JobDependency, JobDependency.child_id == Job.id)
                .where(JobDependency.parent_id == parent_id)
                .order_by(Job.id.asc())
            )
            return [row.to_record() for row in rows]

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
        async with self._transaction() as session:
            if not await self._conditional_update(
                session, job_id, expected_state, expected_token, changes
            ):
                return None
            # Any failure here rolls back the transition above
            session.add(DeadLetter.from_entry(entry))
            await session.flush()

            logger.debug(
                "Appended dead letter",
                extra={"job_id": str(job_id), "dead_letter_id": str(entry.id)}
            )
            return await self._load(session, job_id)

    async def list_dead_letters(self, limit: int, offset: int) -> list[DeadLetterEntry]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(DeadLetter)
                .order_by(DeadLetter.id.asc())
                .limit(limit)
                .offset(offset)
            )
            return [row.to_entry() for row in rows]

    async def get_dead_letter(self, entry_id: UUID) -> DeadLetterEntry | None:
        async with self._transaction() as session:
            row = await session.get(DeadLetter, entry_id)
            return row.to_entry() if row is not None else None

    async def count_by_state(self) -> dict[JobState, int]:
        async with self._transaction() as session:
            result = await session.execute(
                select(Job.state, func.count()).group_by(Job.state)
            )
            return {JobState(state): count for state, count in result.all()}
