"""
Job handlers registry and implementations.

Handlers are looked up by job name. They must be idempotent: a job may
run more than once if its worker stalls and the lease is reclaimed.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable

from jobengine.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(name: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        name: The job name this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        async def handle_send_email(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[name] = handler
        logger.info(f"Registered handler for job name: {name}")
        return handler
    return decorator


def unregister_handler(name: str) -> None:
    _handlers.pop(name, None)


def get_handler(name: str) -> JobHandler | None:
    """
    Get the handler for a job name.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(name)


def list_handlers() -> list[str]:
    """List all registered job names."""
    return list(_handlers.keys())


def _json_payload(context: JobContext) -> dict:
    """Decode a JSON object payload; anything else reads as no options."""
    if not context.payload:
        return {}
    try:
        data = json.loads(context.payload)
    except ValueError:
        logger.debug("Payload is not JSON", extra={"job_id": str(context.job_id)})
        return {}
    return data if isinstance(data, dict) else {}


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """Returns the payload unchanged as the job result."""
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt}
    )
    return JobResult(success=True, output=context.payload)


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleeps for a while; useful for exercising lease renewal.

    Payload is JSON with:
    - duration_seconds: How long to sleep
    """
    duration = _json_payload(context).get("duration_seconds", 1)

    logger.info(
        "Sleep job starting",
        extra={"job_id": str(context.job_id), "duration": duration}
    )
    await asyncio.sleep(duration)
    return JobResult(success=True)


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """
    Always fails.

    Payload is optional JSON with:
    - category: error category to report
    - retryable: set false to dead-letter on the first failure
    """
    data = _json_payload(context)
    logger.info(
        "Failing job executing (will fail)",
        extra={"job_id": str(context.job_id), "attempt": context.attempt}
    )
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
        error_category=data.get("category"),
        retryable=data.get("retryable", True),
    )


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its name.

    Handler exceptions become failed results categorised by exception type.
    """
    handler = get_handler(context.name)

    if handler is None:
        logger.error(
            f"No handler for job name: {context.name}",
            extra={"job_id": str(context.job_id)}
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job name: {context.name}",
            error_category="unroutable",
            retryable=False,
        )

    try:
        return await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)}
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
            error_category=type(e).__name__,
        )
