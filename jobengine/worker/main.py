"""
Worker process for executing jobs.

The worker leases jobs from the queue, runs the handler registered for
each job's name, and reports the outcome with the lease token it was
given. A heartbeat keeps leases alive while handlers run.
"""

import asyncio
import logging
import os
import signal
import time
from uuid import UUID

from jobengine.config import Settings, get_settings
from jobengine.constants import SPAN_EXECUTE_JOB
from jobengine.db import SQLStorage, close_db, get_engine, get_session_factory, init_db
from jobengine.engine.queue import JobQueue
from jobengine.errors import InvalidLease
from jobengine.observability.logging import job_log_context, setup_logging
from jobengine.observability.metrics import setup_metrics
from jobengine.observability.tracing import instrument_sqlalchemy, job_span, setup_tracing
from jobengine.types.job import JobContext, JobError, LeasedJob
from jobengine.worker.handlers import execute_job

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that leases and executes jobs.

    Features:
    - Blocking acquire, woken as soon as a job becomes ready
    - Heartbeat to extend leases for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT
    - Results for reclaimed leases are discarded, never applied
    """

    def __init__(
        self,
        queue: JobQueue,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        lease_duration: float | None = None,
        heartbeat_interval: float | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The queue to take jobs from.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            batch_size: Maximum jobs executed concurrently.
            poll_interval: Seconds to block waiting for a job.
            lease_duration: Seconds each lease (and renewal) lasts.
            heartbeat_interval: Seconds between lease renewals.
            settings: Optional settings override.
        """
        settings = settings or queue.settings

        self.queue = queue
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.lease_duration = lease_duration or settings.worker_lease_duration_seconds
        self.heartbeat_interval = heartbeat_interval or settings.worker_heartbeat_interval_seconds

        self._running = False
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._tokens: dict[UUID, str] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = queue.metrics

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run the worker until stop() is called."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "batch_size": self.batch_size}
        )

        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        while self._running:
            try:
                await self._poll_and_execute()
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(self.poll_interval)

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> int:
        """
        Lease and execute one batch without blocking.

        Returns:
            Number of jobs processed.
        """
        return await self._poll_and_execute(block=False)

    async def _poll_and_execute(self, block: bool = True) -> int:
        """
        Lease up to batch_size jobs and execute them concurrently.

        Returns:
            Number of jobs processed.
        """
        leased: list[LeasedJob] = []
        while len(leased) < self.batch_size:
            # Only the first acquire waits; the rest take what is ready now
            timeout = self.poll_interval if block and not leased else None
            job = await self.queue.acquire(self.worker_id, self.lease_duration, timeout)
            if job is None:
                break
            leased.append(job)

        if not leased:
            return 0

        logger.info(
            f"Acquired {len(leased)} jobs",
            extra={"worker_id": self.worker_id}
        )

        tasks = []
        for job in leased:
            self._tokens[job.job_id] = job.token
            task = asyncio.create_task(self._execute_job(job))
            self._current_jobs[job.job_id] = task
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)
        return len(leased)

    async def _execute_job(self, leased: LeasedJob) -> None:
        """
        Execute a single leased job and report its outcome.

        Args:
            leased: The job and the lease token it is held under.
        """
        start_time = time.monotonic()
        job = leased.job
        attempt = job.attempts_made + 1

        context = JobContext(
            job_id=job.id,
            name=job.name,
            attempt=attempt,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lease_owner=self.worker_id,
            lease_token=leased.token,
            lease_expires_at=leased.expires_at,
        )

        try:
            with job_log_context(job.id, self.worker_id, attempt):
                logger.info("Executing job", extra={"job_name": job.name})

                with job_span(SPAN_EXECUTE_JOB, job_id=job.id, job_name=job.name, attempt=attempt):
                    result = await execute_job(context)

                duration = time.monotonic() - start_time
                try:
                    if result.success:
                        await self.queue.complete(job.id, leased.token, result.output)
                        logger.info(
                            "Job completed successfully",
                            extra={"duration": f"{duration:.2f}s"}
                        )
                    else:
                        updated = await self.queue.fail(
                            job.id,
                            leased.token,
                            JobError(result.error or "Unknown error", result.error_category),
                            retryable=result.retryable,
                        )
                        logger.warning(
                            "Job failed",
                            extra={"error": result.error, "state": updated.state.value}
                        )
                except InvalidLease as e:
                    logger.warning(
                        "Lease lost before reporting, result discarded",
                        extra={"reason": e.reason}
                    )
                    outcome = "discarded"
                else:
                    outcome = "succeeded" if result.success else "failed"

                self._metrics.observe_duration(job.name, outcome, duration)

        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": str(job.id), "error": str(e)}
            )

            # Try to report the failure so the job is retried
            try:
                await self.queue.fail(job.id, leased.token, JobError.from_exception(e, "worker"))
            except Exception:
                logger.exception("Failed to mark job as failed")

        finally:
            self._current_jobs.pop(job.id, None)
            self._tokens.pop(job.id, None)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the stall sweep
        while they're still being executed.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for job_id, token in list(self._tokens.items()):
                    try:
                        await self.queue.renew(job_id, token, self.lease_duration)
                        logger.debug("Extended lease", extra={"job_id": str(job_id)})
                    except InvalidLease as e:
                        logger.warning(
                            "Lease lost while job was running",
                            extra={"job_id": str(job_id), "reason": e.reason}
                        )
                        self._tokens.pop(job_id, None)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    setup_metrics(settings.prometheus_port)
    await init_db(settings)
    instrument_sqlalchemy(get_engine())

    queue = JobQueue(SQLStorage(get_session_factory()), settings)
    worker = Worker(queue)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
