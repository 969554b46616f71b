"""
Unit tests for the background sweeper.
"""

import asyncio

from jobengine.constants import JobState
from jobengine.engine.queue import JobQueue
from jobengine.sweeper import Sweeper


class TestSweeper:
    """Tests for the delay and stall loops."""

    async def test_run_once(self, queue: JobQueue, clock):
        delayed = await queue.create(b"d", delay=5)
        await queue.create(b"a")
        await queue.acquire("w1", 10)
        clock.advance(11)

        sweeper = Sweeper(queue, delay_interval=1, stall_interval=1)

        assert await sweeper.run_once() == (1, 1)
        assert (await queue.get_job(delayed)).state == JobState.WAITING

    async def test_refresh_depth(self, queue: JobQueue, metrics):
        await queue.create(b"a")
        sweeper = Sweeper(queue, delay_interval=1, stall_interval=1, refresh_depth=True)

        await sweeper.run_once()

        value = metrics._registry.get_sample_value("job_queue_depth", {"state": "waiting"})
        assert value == 1

    async def test_background_loops(self, queue: JobQueue, clock):
        job_id = await queue.create(b"a")
        await queue.acquire("w1", 10)
        clock.advance(11)

        sweeper = Sweeper(queue, delay_interval=0.01, stall_interval=0.01)
        sweeper.start()
        try:
            for _ in range(200):
                if (await queue.get_job(job_id)).state == JobState.WAITING:
                    break
                await asyncio.sleep(0.01)
        finally:
            await sweeper.stop()

        assert not sweeper.running
        assert (await queue.get_job(job_id)).state == JobState.WAITING

    async def test_loop_survives_errors(self, queue: JobQueue, monkeypatch):
        calls = 0

        async def broken() -> int:
            nonlocal calls
            calls += 1
            raise RuntimeError("storage down")

        monkeypatch.setattr(queue, "promote_delayed", broken)
        sweeper = Sweeper(queue, delay_interval=0.01, stall_interval=1)
        sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert calls > 1


class TestQueueLifecycle:
    """JobQueue as an async context manager runs the sweeper."""

    async def test_context_manager_sweeps_stalled_jobs(self, queue: JobQueue, clock):
        job_id = await queue.create(b"a")
        await queue.acquire("w1", 10)
        clock.advance(11)

        async with queue:
            for _ in range(200):
                if (await queue.get_job(job_id)).state == JobState.WAITING:
                    break
                await asyncio.sleep(0.01)

        assert (await queue.get_job(job_id)).state == JobState.WAITING
