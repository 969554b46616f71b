"""
Unit tests for leases: acquire, renew, stall recovery and force_expire.
"""

import asyncio
from uuid import uuid4

import pytest

from jobengine.constants import (
    EVENT_JOB_ACTIVE,
    EVENT_JOB_STALLED,
    MAX_DURATION_SECONDS,
    STALL_LIMIT_ERROR,
    DeadLetterReason,
    JobState,
)
from jobengine.engine.queue import JobQueue
from jobengine.errors import InvalidLease, InvalidState, NotFound


class TestAcquire:
    """Tests for granting leases."""

    async def test_acquire_sets_lease_fields(self, queue: JobQueue, clock):
        job_id = await queue.create(b"x")

        leased = await queue.acquire("worker-1", 30)

        assert leased.job_id == job_id
        assert leased.job.state == JobState.ACTIVE
        assert leased.job.lease_owner == "worker-1"
        assert leased.job.lease_token == leased.token
        assert (leased.expires_at - clock.now).total_seconds() == 30

    async def test_tokens_are_unique(self, queue: JobQueue):
        await queue.create(b"a")
        await queue.create(b"b")

        first = await queue.acquire("w1", 30)
        second = await queue.acquire("w1", 30)

        assert first.token != second.token

    async def test_acquire_publishes_active_event(self, queue: JobQueue):
        job_id = await queue.create(b"x")
        subscription = queue.subscribe(event_types=[EVENT_JOB_ACTIVE])

        await queue.acquire("w1", 30)

        event = subscription.get_nowait()
        assert event.job_id == job_id
        assert event.data["worker_id"] == "w1"
        assert event.data["attempt"] == 1

    @pytest.mark.parametrize("duration", [0, -1, float("inf"), float("nan"), 1e13])
    async def test_invalid_lease_duration(self, queue: JobQueue, duration):
        await queue.create(b"x")

        with pytest.raises(ValueError):
            await queue.acquire("w1", duration)

        assert (await queue.counts())[JobState.WAITING] == 1

    async def test_longest_lease_duration(self, queue: JobQueue, clock):
        await queue.create(b"x")

        leased = await queue.acquire("w1", MAX_DURATION_SECONDS)

        expires_in = leased.job.lease_expires_at - clock.now
        assert expires_in.total_seconds() == MAX_DURATION_SECONDS

    async def test_blocking_acquire_woken_by_create(self, queue: JobQueue):
        waiter = asyncio.create_task(queue.acquire("w1", 30, block_timeout=5))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        job_id = await queue.create(b"x")
        leased = await asyncio.wait_for(waiter, timeout=2)

        assert leased.job_id == job_id

    async def test_blocking_acquire_times_out(self, queue: JobQueue):
        assert await queue.acquire("w1", 30, block_timeout=0.1) is None


class TestRenew:
    """Tests for lease renewal."""

    async def test_renew_extends_expiry(self, queue: JobQueue, clock):
        await queue.create(b"x")
        leased = await queue.acquire("w1", 10)
        clock.advance(8)

        renewed = await queue.renew(leased.job_id, leased.token, 10)

        assert (renewed.lease_expires_at - clock.now).total_seconds() == 10

    async def test_renew_with_wrong_token(self, queue: JobQueue):
        await queue.create(b"x")
        leased = await queue.acquire("w1", 10)

        with pytest.raises(InvalidLease) as exc_info:
            await queue.renew(leased.job_id, "not-the-token", 10)
        assert exc_info.value.reason == "lease token does not match"

    async def test_renew_after_completion(self, queue: JobQueue):
        await queue.create(b"x")
        leased = await queue.acquire("w1", 10)
        await queue.complete(leased.job_id, leased.token)

        with pytest.raises(InvalidLease) as exc_info:
            await queue.renew(leased.job_id, leased.token, 10)
        assert exc_info.value.reason == "job is completed"

    @pytest.mark.parametrize("extension", [0, float("inf"), float("nan"), 1e13])
    async def test_invalid_extension(self, queue: JobQueue, extension):
        await queue.create(b"x")
        leased = await queue.acquire("w1", 10)

        with pytest.raises(ValueError):
            await queue.renew(leased.job_id, leased.token, extension)

        job = await queue.get_job(leased.job_id)
        assert job.lease_expires_at == leased.job.lease_expires_at

    async def test_renewed_lease_survives_sweep(self, queue: JobQueue, clock):
        await queue.create(b"x")
        leased = await queue.acquire("w1", 10)
        clock.advance(8)
        await queue.renew(leased.job_id, leased.token, 10)
        clock.advance(8)

        assert await queue.sweep_stalled() == 0
        assert (await queue.get_job(leased.job_id)).state == JobState.ACTIVE

    async def test_expired_unswept_lease_can_still_complete(self, queue: JobQueue, clock):
        await queue.create(b"x")
        leased = await queue.acquire("w1", 10)
        clock.advance(60)

        job = await queue.complete(leased.job_id, leased.token)

        assert job.state == JobState.COMPLETED


class TestStallRecovery:
    """Tests for reclaiming expired leases."""

    async def test_expired_lease_returns_to_waiting(self, queue: JobQueue, clock):
        job_id = await queue.create(b"x")
        await queue.acquire("w1", 10)
        subscription = queue.subscribe(event_types=[EVENT_JOB_STALLED])
        clock.advance(11)

        assert await queue.sweep_stalled() == 1

        job = await queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.stall_count == 1
        assert job.attempts_made == 0
        assert job.lease_token is None
        assert subscription.get_nowait().data["stall_count"] == 1

    async def test_lease_not_reclaimed_before_expiry(self, queue: JobQueue, clock):
        await queue.create(b"x")
        await queue.acquire("w1", 10)
        clock.advance(9)

        assert await queue.sweep_stalled() == 0

    async def test_stale_worker_cannot_report(self, queue: JobQueue, clock):
        await queue.create(b"x")
        first = await queue.acquire("w1", 10)
        clock.advance(11)
        await queue.sweep_stalled()

        second = await queue.acquire("w2", 10)
        assert second.job_id == first.job_id

        with pytest.raises(InvalidLease):
            await queue.complete(first.job_id, first.token)
        with pytest.raises(InvalidLease):
            await queue.fail(first.job_id, first.token, "late")

        job = await queue.complete(second.job_id, second.token, b"done")
        assert job.result == b"done"

    async def test_stall_limit_dead_letters(self, queue: JobQueue, clock):
        job_id = await queue.create(b"x")

        for _ in range(2):
            await queue.acquire("w1", 10)
            clock.advance(11)
            await queue.sweep_stalled()

        job = await queue.get_job(job_id)
        assert job.state == JobState.DEAD
        assert job.stall_count == 2

        [entry] = await queue.list_dead_letters()
        assert entry.job_id == job_id
        assert entry.reason == DeadLetterReason.EXCEEDED_STALL_LIMIT
        assert entry.last_error == STALL_LIMIT_ERROR

    async def test_cancelled_job_is_discarded_on_expiry(self, queue: JobQueue, clock):
        parent = await queue.create(b"parent")
        child = await queue.create(b"child", parent_refs=[parent])
        await queue.acquire("w1", 10)
        assert await queue.cancel(parent) is False
        clock.advance(11)

        await queue.sweep_stalled()

        with pytest.raises(NotFound):
            await queue.get_job(parent)
        assert (await queue.get_job(child)).state == JobState.WAITING


class TestForceExpire:
    """Tests for force_expire."""

    async def test_force_expire_then_sweep(self, queue: JobQueue):
        job_id = await queue.create(b"x")
        leased = await queue.acquire("w1", 300)

        await queue.force_expire(job_id)
        assert await queue.sweep_stalled() == 1

        job = await queue.get_job(job_id)
        assert job.state == JobState.WAITING
        with pytest.raises(InvalidLease):
            await queue.complete(job_id, leased.token)

    async def test_force_expire_requires_active_job(self, queue: JobQueue):
        job_id = await queue.create(b"x")

        with pytest.raises(InvalidState):
            await queue.force_expire(job_id)

    async def test_force_expire_unknown_job(self, queue: JobQueue):
        with pytest.raises(NotFound):
            await queue.force_expire(uuid4())
