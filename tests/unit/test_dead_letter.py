"""
Unit tests for the dead-letter store.
"""

from uuid import uuid4

import pytest

from jobengine.constants import EVENT_JOB_DEAD, EVENT_JOB_REQUEUED, BackoffType, JobState
from jobengine.engine.queue import JobQueue
from jobengine.errors import NotFound
from jobengine.types.job import BackoffSpec


async def kill(queue: JobQueue, payload: bytes = b"x", **options):
    """Create a job and fail it once, non-retryably."""
    job_id = await queue.create(payload, **options)
    leased = await queue.acquire("w1", 30)
    await queue.fail(leased.job_id, leased.token, "fatal", retryable=False)
    return job_id


class TestDeadLetterStore:
    """Tests for list/get/requeue."""

    async def test_list_in_append_order(self, queue: JobQueue):
        ids = [await kill(queue, str(i).encode()) for i in range(3)]

        entries = await queue.list_dead_letters()

        assert [e.job_id for e in entries] == ids

    async def test_pagination(self, queue: JobQueue):
        ids = [await kill(queue, str(i).encode()) for i in range(5)]

        page = await queue.list_dead_letters(limit=2, offset=2)

        assert [e.job_id for e in page] == ids[2:4]
        assert await queue.list_dead_letters(limit=10, offset=5) == []

    @pytest.mark.parametrize("limit, offset", [(0, 0), (-1, 0), (10, -1)])
    async def test_invalid_pagination(self, queue: JobQueue, limit, offset):
        with pytest.raises(ValueError):
            await queue.list_dead_letters(limit=limit, offset=offset)

    async def test_get(self, queue: JobQueue):
        await kill(queue)
        [entry] = await queue.list_dead_letters()

        assert await queue.get_dead_letter(entry.id) == entry

    async def test_get_unknown(self, queue: JobQueue):
        with pytest.raises(NotFound):
            await queue.get_dead_letter(uuid4())

    async def test_dead_event(self, queue: JobQueue):
        subscription = queue.subscribe(event_types=[EVENT_JOB_DEAD])

        job_id = await kill(queue)

        event = subscription.get_nowait()
        assert event.job_id == job_id
        assert event.data["reason"] == "non-retryable"
        assert event.data["total_attempts"] == 1


class TestRequeue:
    """Tests for replaying dead jobs."""

    async def test_requeue_creates_fresh_job(self, queue: JobQueue):
        old_id = await kill(queue, b"body", name="report", priority=7, max_attempts=4)
        [entry] = await queue.list_dead_letters()
        subscription = queue.subscribe(event_types=[EVENT_JOB_REQUEUED])

        new_id = await queue.requeue(entry.id)

        assert new_id != old_id
        job = await queue.get_job(new_id)
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert job.stall_count == 0
        assert job.payload == b"body"
        assert job.name == "report"
        assert job.priority == 7
        assert job.max_attempts == 4
        assert subscription.get_nowait().data["dead_letter_id"] == str(entry.id)

    async def test_requeue_keeps_backoff(self, queue: JobQueue, clock):
        await kill(queue, max_attempts=3, backoff={"type": "fixed", "delay": 7})
        [entry] = await queue.list_dead_letters()
        assert entry.backoff == BackoffSpec(type=BackoffType.FIXED, delay=7)

        new_id = await queue.requeue(entry.id)
        leased = await queue.acquire("w1", 30)
        await queue.fail(leased.job_id, leased.token, "again")

        job = await queue.get_job(new_id)
        assert job.backoff == entry.backoff
        assert job.state == JobState.DELAYED
        assert (job.ready_at - clock.now).total_seconds() == 7

    async def test_requeue_leaves_entry_and_old_job(self, queue: JobQueue):
        old_id = await kill(queue)
        [entry] = await queue.list_dead_letters()

        await queue.requeue(entry.id)

        assert await queue.get_dead_letter(entry.id) == entry
        assert len(await queue.list_dead_letters()) == 1
        assert (await queue.get_job(old_id)).state == JobState.DEAD

    async def test_requeued_job_is_dispatchable(self, queue: JobQueue):
        await kill(queue, b"again")
        [entry] = await queue.list_dead_letters()
        new_id = await queue.requeue(entry.id)

        leased = await queue.acquire("w1", 30)

        assert leased.job_id == new_id
        assert leased.job.payload == b"again"

    async def test_requeue_twice(self, queue: JobQueue):
        await kill(queue)
        [entry] = await queue.list_dead_letters()

        first = await queue.requeue(entry.id)
        second = await queue.requeue(entry.id)

        assert first != second

    async def test_requeue_unknown(self, queue: JobQueue):
        with pytest.raises(NotFound):
            await queue.requeue(uuid4())

    async def test_removed_dead_job_keeps_entry(self, queue: JobQueue):
        job_id = await kill(queue)

        await queue.remove(job_id)

        [entry] = await queue.list_dead_letters()
        assert entry.job_id == job_id
