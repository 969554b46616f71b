"""
Unit tests for job handlers.
"""

import json
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from jobengine.types.job import JobContext, JobResult
from jobengine.worker.handlers import (
    execute_job,
    get_handler,
    handle_echo,
    handle_failing_job,
    list_handlers,
    register_handler,
    unregister_handler,
)


def make_context(name: str = "echo", payload: bytes = b"hello", attempt: int = 1) -> JobContext:
    return JobContext(
        job_id=uuid4(),
        name=name,
        attempt=attempt,
        max_attempts=3,
        payload=payload,
        lease_owner="test-worker",
        lease_token="token",
        lease_expires_at=datetime(2024, 1, 1) + timedelta(seconds=30),
    )


class TestJobHandlers:
    """Tests for job handlers."""

    @pytest.fixture
    def job_context(self) -> JobContext:
        """Create a test job context."""
        return make_context()

    def test_list_handlers(self):
        """Test listing registered handlers."""
        handlers = list_handlers()

        assert "echo" in handlers
        assert "sleep" in handlers
        assert "failing_job" in handlers

    def test_get_handler_exists(self):
        assert get_handler("echo") == handle_echo

    def test_get_handler_not_exists(self):
        assert get_handler("nonexistent") is None

    async def test_echo_handler(self, job_context: JobContext):
        result = await handle_echo(job_context)

        assert result.success is True
        assert result.output == b"hello"

    async def test_failing_handler(self, job_context: JobContext):
        result = await handle_failing_job(job_context)

        assert result.success is False
        assert result.retryable is True
        assert "Intentional failure" in result.error

    @pytest.mark.parametrize("payload", [b"hello", b"\xff\xfe", b"[1, 2]", b""])
    async def test_failing_handler_ignores_non_object_payload(self, payload: bytes):
        result = await handle_failing_job(make_context("failing_job", payload))

        assert result.success is False
        assert result.retryable is True
        assert result.error_category is None

    async def test_failing_handler_options(self):
        payload = json.dumps({"category": "validation", "retryable": False}).encode()

        result = await handle_failing_job(make_context("failing_job", payload))

        assert result.error_category == "validation"
        assert result.retryable is False

    async def test_sleep_handler(self):
        payload = json.dumps({"duration_seconds": 0}).encode()

        result = await execute_job(make_context("sleep", payload))

        assert result.success is True

    async def test_execute_job_routes_by_name(self, job_context: JobContext):
        result = await execute_job(job_context)

        assert result.success is True
        assert result.output == job_context.payload

    async def test_execute_job_unknown_name(self):
        result = await execute_job(make_context("nonexistent_handler"))

        assert result.success is False
        assert result.retryable is False
        assert result.error_category == "unroutable"
        assert "No handler registered" in result.error

    async def test_handler_exception_becomes_failure(self):
        @register_handler("explodes")
        async def explodes(context: JobContext) -> JobResult:
            raise ConnectionError("upstream down")

        try:
            result = await execute_job(make_context("explodes"))
        finally:
            unregister_handler("explodes")

        assert result.success is False
        assert result.retryable is True
        assert result.error_category == "ConnectionError"
        assert "upstream down" in result.error
        assert get_handler("explodes") is None


class TestJobContext:
    """Tests for JobContext."""

    def test_is_last_attempt(self):
        assert make_context(attempt=3).is_last_attempt is True
        assert make_context(attempt=2).is_last_attempt is False

    def test_remaining_attempts(self):
        assert make_context(attempt=1).remaining_attempts == 2
