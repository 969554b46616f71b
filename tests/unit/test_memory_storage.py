"""
Unit tests for the in-memory storage adapter.
"""

from datetime import datetime, timedelta

import pytest

from jobengine.constants import DeadLetterReason, JobState
from jobengine.db.memory import InMemoryStorage
from jobengine.ids import new_id
from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.job import JobRecord

NOW = datetime(2024, 1, 1, 12, 0, 0)


def make_job(**overrides) -> JobRecord:
    fields = {
        "id": new_id(),
        "payload": b"{}",
        "created_at": NOW,
        "ready_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return JobRecord(**fields)


def make_entry(job: JobRecord) -> DeadLetterEntry:
    return DeadLetterEntry(
        id=new_id(),
        job_id=job.id,
        name=job.name,
        payload=job.payload,
        priority=job.priority,
        max_attempts=job.max_attempts,
        attempts_made=job.max_attempts,
        stall_count=0,
        reason=DeadLetterReason.EXHAUSTED,
        last_error="boom",
        error_category=None,
        created_at=NOW,
    )


class TestInMemoryStorage:
    """Tests for InMemoryStorage."""

    async def test_records_are_copies(self, storage: InMemoryStorage):
        job = await storage.insert_job(make_job(), enqueue=True)

        job.state = JobState.DEAD
        stored = await storage.get_job(job.id)

        assert stored.state == JobState.WAITING

    async def test_enqueue_assigns_increasing_sequence(self, storage: InMemoryStorage):
        first = await storage.insert_job(make_job(), enqueue=True)
        delayed = await storage.insert_job(make_job(state=JobState.DELAYED), enqueue=False)
        second = await storage.insert_job(make_job(), enqueue=True)

        assert delayed.sequence is None
        assert first.sequence < second.sequence

    async def test_duplicate_id_rejected(self, storage: InMemoryStorage):
        job = make_job()
        await storage.insert_job(job, enqueue=True)

        with pytest.raises(ValueError):
            await storage.insert_job(job, enqueue=True)

    async def test_compare_and_set_checks_state_and_token(self, storage: InMemoryStorage):
        job = await storage.insert_job(
            make_job(state=JobState.ACTIVE, lease_token="abc"), enqueue=False
        )

        assert await storage.compare_and_set(
            job.id, expected_state=JobState.WAITING, changes={"attempts_made": 1}
        ) is None
        assert await storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token="other",
            changes={"attempts_made": 1},
        ) is None

        updated = await storage.compare_and_set(
            job.id,
            expected_state=JobState.ACTIVE,
            expected_token="abc",
            changes={"attempts_made": 1},
        )
        assert updated.attempts_made == 1

    async def test_compare_and_set_rejects_unknown_fields(self, storage: InMemoryStorage):
        job = await storage.insert_job(make_job(), enqueue=True)

        with pytest.raises(ValueError):
            await storage.compare_and_set(
                job.id, expected_state=JobState.WAITING, changes={"priority": 9}
            )

    async def test_scan_ready_order(self, storage: InMemoryStorage):
        low = await storage.insert_job(make_job(priority=1), enqueue=True)
        high = await storage.insert_job(make_job(priority=5), enqueue=True)
        high_later = await storage.insert_job(make_job(priority=5), enqueue=True)

        ready = await storage.scan_ready(10)

        assert [j.id for j in ready] == [high.id, high_later.id, low.id]

    async def test_scan_due_skips_jobs_awaiting_parents(self, storage: InMemoryStorage):
        past = NOW - timedelta(seconds=5)
        due = await storage.insert_job(
            make_job(state=JobState.DELAYED, ready_at=past), enqueue=False
        )
        await storage.insert_job(
            make_job(state=JobState.DELAYED, ready_at=past, awaiting_parents=True),
            enqueue=False,
        )
        await storage.insert_job(
            make_job(state=JobState.DELAYED, ready_at=NOW + timedelta(seconds=5)),
            enqueue=False,
        )

        assert [j.id for j in await storage.scan_due(NOW, 10)] == [due.id]

    async def test_scan_expired(self, storage: InMemoryStorage):
        expired = await storage.insert_job(
            make_job(state=JobState.ACTIVE, lease_expires_at=NOW - timedelta(seconds=1)),
            enqueue=False,
        )
        await storage.insert_job(
            make_job(state=JobState.ACTIVE, lease_expires_at=NOW + timedelta(seconds=1)),
            enqueue=False,
        )

        assert [j.id for j in await storage.scan_expired(NOW, 10)] == [expired.id]

    async def test_dependents_and_delete(self, storage: InMemoryStorage):
        parent = await storage.insert_job(make_job(), enqueue=True)
        child = await storage.insert_job(
            make_job(state=JobState.DELAYED, parent_refs=(parent.id,)), enqueue=False
        )

        assert [j.id for j in await storage.find_dependents(parent.id)] == [child.id]
        assert not await storage.delete_job(child.id, expected_states=(JobState.WAITING,))
        assert await storage.delete_job(child.id, expected_states=(JobState.DELAYED,))
        assert await storage.find_dependents(parent.id) == []

    async def test_dead_letter_is_atomic(self):
        class BrokenStorage(InMemoryStorage):
            def _append_dead_letter(self, entry: DeadLetterEntry) -> None:
                raise RuntimeError("disk full")

        storage = BrokenStorage()
        job = await storage.insert_job(
            make_job(state=JobState.ACTIVE, lease_token="abc"), enqueue=False
        )

        with pytest.raises(RuntimeError):
            await storage.dead_letter(
                job.id,
                expected_state=JobState.ACTIVE,
                expected_token="abc",
                changes={"state": JobState.DEAD, "lease_token": None},
                entry=make_entry(job),
            )

        stored = await storage.get_job(job.id)
        assert stored.state == JobState.ACTIVE
        assert stored.lease_token == "abc"
        assert await storage.list_dead_letters(10, 0) == []

    async def test_dead_letters_listed_in_append_order(self, storage: InMemoryStorage):
        entries = []
        for _ in range(3):
            job = await storage.insert_job(
                make_job(state=JobState.ACTIVE, lease_token="t"), enqueue=False
            )
            entry = make_entry(job)
            entries.append(entry)
            await storage.dead_letter(
                job.id,
                expected_state=JobState.ACTIVE,
                expected_token="t",
                changes={"state": JobState.DEAD},
                entry=entry,
            )

        assert await storage.list_dead_letters(2, 1) == entries[1:]
        assert await storage.get_dead_letter(entries[0].id) == entries[0]

    async def test_count_by_state(self, storage: InMemoryStorage):
        await storage.insert_job(make_job(), enqueue=True)
        await storage.insert_job(make_job(), enqueue=True)
        await storage.insert_job(make_job(state=JobState.DELAYED), enqueue=False)

        assert await storage.count_by_state() == {JobState.WAITING: 2, JobState.DELAYED: 1}

    async def test_wait_for_ready(self, storage: InMemoryStorage):
        assert await storage.wait_for_ready(0.01) is False
