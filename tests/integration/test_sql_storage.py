"""
Integration tests for the SQL storage adapter.

Runs against a SQLite file by default; set TEST_DATABASE_URL to a
postgresql+asyncpg URL to run against PostgreSQL.
"""

from uuid import uuid4

import pytest

from jobengine.constants import BackoffType, DeadLetterReason, JobState
from jobengine.db import SQLStorage
from jobengine.engine.queue import JobQueue
from jobengine.errors import InvalidLease, NotFound
from jobengine.ids import new_id
from jobengine.types.job import BackoffSpec, JobRecord


def make_job(clock, **fields) -> JobRecord:
    fields.setdefault("payload", b"x")
    return JobRecord(
        id=new_id(),
        created_at=clock.now,
        ready_at=clock.now,
        updated_at=clock.now,
        **fields,
    )


class TestSQLStoragePrimitives:
    """Tests for the adapter's conditional operations."""

    async def test_insert_and_get(self, sql_storage: SQLStorage, clock):
        job = make_job(
            clock,
            payload=b"\x00\x01binary",
            name="echo",
            priority=-3,
            backoff=BackoffSpec(type="fixed", delay=2),
        )

        stored = await sql_storage.insert_job(job, enqueue=True)
        loaded = await sql_storage.get_job(job.id)

        assert stored.sequence is not None
        assert loaded.payload == b"\x00\x01binary"
        assert loaded.priority == -3
        assert loaded.state == JobState.WAITING
        assert loaded.backoff == BackoffSpec(type="fixed", delay=2)

    async def test_get_missing(self, sql_storage: SQLStorage):
        assert await sql_storage.get_job(uuid4()) is None

    async def test_compare_and_set_requires_state(self, sql_storage: SQLStorage, clock):
        job = make_job(clock)
        await sql_storage.insert_job(job, enqueue=True)

        missed = await sql_storage.compare_and_set(
            job.id,
            expected_state=JobState.DELAYED,
            changes={"state": JobState.ACTIVE},
        )
        hit = await sql_storage.compare_and_set(
            job.id,
            expected_state=JobState.WAITING,
            changes={"state": JobState.ACTIVE, "lease_token": "t1"},
        )

        assert missed is None
        assert hit.state == JobState.ACTIVE
        assert hit.lease_token == "t1"

    async def test_compare_and_set_requires_token(self, sql_storage: SQLStorage, clock):
        job = make_job(clock, state=JobState.ACTIVE, lease_token="t1")
        await sql_storage.insert_job(job, enqueue=False)

        stale = await sql_storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token="t0",
            changes={"state": JobState.COMPLETED},
        )

        assert stale is None
        assert (await sql_storage.get_job(job.id)).state == JobState.ACTIVE

    async def test_delete_job_respects_states(self, sql_storage: SQLStorage, clock):
        job = make_job(clock)
        await sql_storage.insert_job(job, enqueue=True)

        assert await sql_storage.delete_job(job.id, expected_states=(JobState.ACTIVE,)) is False
        assert await sql_storage.delete_job(job.id, expected_states=(JobState.WAITING,)) is True
        assert await sql_storage.get_job(job.id) is None


class TestSQLQueue:
    """End-to-end queue behaviour over the SQL adapter."""

    async def test_lifecycle(self, sql_queue: JobQueue):
        job_id = await sql_queue.create(b"payload", name="echo", priority=2)

        leased = await sql_queue.acquire("w1", 30)
        assert leased.job_id == job_id
        await sql_queue.renew(job_id, leased.token, 60)
        job = await sql_queue.complete(job_id, leased.token, b"result")

        assert job.state == JobState.COMPLETED
        assert job.result == b"result"
        assert job.attempts_made == 1
        with pytest.raises(InvalidLease):
            await sql_queue.complete(job_id, leased.token)

    async def test_ordering(self, sql_queue: JobQueue):
        await sql_queue.create(b"1", priority=1)
        await sql_queue.create(b"5a", priority=5)
        await sql_queue.create(b"3", priority=3)
        await sql_queue.create(b"5b", priority=5)

        order = []
        while (leased := await sql_queue.acquire("w1", 30)) is not None:
            order.append(leased.job.payload)
            await sql_queue.complete(leased.job_id, leased.token)

        assert order == [b"5a", b"5b", b"3", b"1"]

    async def test_delayed_promotion(self, sql_queue: JobQueue, clock):
        job_id = await sql_queue.create(b"x", delay=5)

        assert await sql_queue.acquire("w1", 30) is None
        clock.advance(5)
        assert await sql_queue.promote_delayed() == 1
        assert (await sql_queue.acquire("w1", 30)).job_id == job_id

    async def test_stall_recovery(self, sql_queue: JobQueue, clock):
        job_id = await sql_queue.create(b"x")
        await sql_queue.acquire("w1", 10)
        clock.advance(11)

        assert await sql_queue.sweep_stalled() == 1
        job = await sql_queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.stall_count == 1

    async def test_dead_letter_and_requeue(self, sql_queue: JobQueue):
        backoff = BackoffSpec(type=BackoffType.FIXED, delay=7)
        job_id = await sql_queue.create(b"body", name="report", max_attempts=1, backoff=backoff)
        leased = await sql_queue.acquire("w1", 30)
        await sql_queue.fail(job_id, leased.token, "fatal")

        [entry] = await sql_queue.list_dead_letters()
        assert entry.job_id == job_id
        assert entry.reason == DeadLetterReason.EXHAUSTED
        assert entry.backoff == backoff
        assert await sql_queue.get_dead_letter(entry.id) == entry

        requeued_id = await sql_queue.requeue(entry.id)
        requeued = await sql_queue.get_job(requeued_id)
        assert requeued.state == JobState.WAITING
        assert requeued.payload == b"body"
        assert requeued.attempts_made == 0
        assert requeued.backoff == backoff

    async def test_dependencies(self, sql_queue: JobQueue):
        parent = await sql_queue.create(b"p")
        child = await sql_queue.create(b"c", parent_refs=[parent])
        assert (await sql_queue.get_job(child)).parent_refs == (parent,)

        leased = await sql_queue.acquire("w1", 30)
        assert leased.job_id == parent
        assert await sql_queue.acquire("w1", 30) is None

        await sql_queue.complete(parent, leased.token)
        assert (await sql_queue.acquire("w1", 30)).job_id == child

    async def test_remove_and_counts(self, sql_queue: JobQueue):
        keep = await sql_queue.create(b"a")
        gone = await sql_queue.create(b"b", delay=10)

        await sql_queue.remove(gone)

        counts = await sql_queue.counts()
        assert counts[JobState.WAITING] == 1
        assert counts[JobState.DELAYED] == 0
        assert (await sql_queue.get_job(keep)).state == JobState.WAITING
        with pytest.raises(NotFound):
            await sql_queue.get_job(gone)
