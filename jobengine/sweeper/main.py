"""
Sweeper process.

Runs delay promotion and stall recovery against the SQL store. Workers
only promote on demand when they acquire, and nothing else reclaims
expired leases, so one sweeper should run per deployment.
"""

import asyncio
import logging
import signal

from jobengine.config import get_settings
from jobengine.db import SQLStorage, close_db, get_engine, get_session_factory, init_db
from jobengine.engine.queue import JobQueue
from jobengine.observability.logging import setup_logging
from jobengine.observability.metrics import setup_metrics
from jobengine.observability.tracing import instrument_sqlalchemy, setup_tracing
from jobengine.sweeper.sweeper import Sweeper

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the sweeper asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    setup_metrics(settings.prometheus_port)
    await init_db(settings)
    instrument_sqlalchemy(get_engine())

    queue = JobQueue(SQLStorage(get_session_factory()), settings)
    sweeper = Sweeper(
        queue,
        delay_interval=settings.delay_sweep_interval_seconds,
        stall_interval=settings.stall_sweep_interval_seconds,
        refresh_depth=True,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(sweeper.stop())
        )

    sweeper.start()
    try:
        await sweeper.wait()
    finally:
        await close_db()


def run() -> None:
    """Run the sweeper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
