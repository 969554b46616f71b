"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobengine.config import Settings
from jobengine.db import Base, InMemoryStorage, SQLStorage, create_session_factory, init_schema
from jobengine.db.connection import get_test_engine
from jobengine.engine.queue import JobQueue
from jobengine.observability.metrics import MetricsCollector

# Set TEST_DATABASE_URL to run the SQL tests against PostgreSQL
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=TEST_DATABASE_URL or "sqlite+aiosqlite://",
        log_level="DEBUG",
        log_format="console",
        default_lease_duration_seconds=30.0,
        max_stalled_count=1,
        backoff_type="exponential",
        backoff_delay_seconds=1.0,
        backoff_base=2.0,
        backoff_max_delay_seconds=60.0,
        acquire_poll_interval_seconds=0.05,
        delay_sweep_interval_seconds=0.05,
        stall_sweep_interval_seconds=0.05,
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.05,
        worker_lease_duration_seconds=5.0,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def queue(
    storage: InMemoryStorage,
    test_settings: Settings,
    clock: FakeClock,
    metrics: MetricsCollector,
) -> JobQueue:
    """A queue over in-memory storage driven by the fake clock."""
    return JobQueue(storage, test_settings, clock=clock, metrics=metrics)


@pytest_asyncio.fixture
async def sql_storage(tmp_path: Path) -> AsyncGenerator[SQLStorage]:
    """SQL adapter on a fresh schema (SQLite file unless TEST_DATABASE_URL is set)."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"
    engine = get_test_engine(url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await init_schema(engine)

    yield SQLStorage(create_session_factory(engine))

    await engine.dispose()


@pytest.fixture
def sql_queue(
    sql_storage: SQLStorage,
    test_settings: Settings,
    clock: FakeClock,
    metrics: MetricsCollector,
) -> JobQueue:
    return JobQueue(sql_storage, test_settings, clock=clock, metrics=metrics)
