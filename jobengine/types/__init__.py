"""
Type definitions for the job engine.
Contains records, options and events shared across modules.
"""

from jobengine.types.dead_letter import DeadLetterEntry
from jobengine.types.events import JobEvent
from jobengine.types.job import (
    BackoffSpec,
    JobContext,
    JobError,
    JobOptions,
    JobRecord,
    JobResult,
    LeasedJob,
)

__all__ = [
    # Job types
    "BackoffSpec",
    "JobOptions",
    "JobRecord",
    "JobError",
    "LeasedJob",
    "JobContext",
    "JobResult",
    # Dead letters
    "DeadLetterEntry",
    # Event types
    "JobEvent",
]
