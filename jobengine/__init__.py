"""
Persistent Job Queue Engine

A priority-ordered job queue with delayed scheduling, lease-based
dispatch, stall recovery, retry/backoff and dead-letter handling.
"""

__version__ = "1.0.0"

from jobengine.db import InMemoryStorage, SQLStorage, StorageAdapter  # noqa: E402
from jobengine.engine import (  # noqa: E402
    DO_NOT_RETRY,
    CustomBackoff,
    EventChannel,
    ExponentialBackoff,
    FixedBackoff,
    JobQueue,
)
from jobengine.errors import (  # noqa: E402
    DependencyUnsatisfied,
    InvalidJobOptions,
    InvalidLease,
    InvalidState,
    JobQueueError,
    NotFound,
    StorageUnavailable,
)
from jobengine.repeat import RepeatScheduler  # noqa: E402
from jobengine.types import (  # noqa: E402
    BackoffSpec,
    DeadLetterEntry,
    JobError,
    JobEvent,
    JobRecord,
    LeasedJob,
)

__all__ = [
    "__version__",
    "JobQueue",
    "InMemoryStorage",
    "SQLStorage",
    "StorageAdapter",
    "EventChannel",
    "RepeatScheduler",
    "BackoffSpec",
    "FixedBackoff",
    "ExponentialBackoff",
    "CustomBackoff",
    "DO_NOT_RETRY",
    "JobRecord",
    "LeasedJob",
    "JobError",
    "JobEvent",
    "DeadLetterEntry",
    "JobQueueError",
    "NotFound",
    "InvalidLease",
    "InvalidState",
    "InvalidJobOptions",
    "DependencyUnsatisfied",
    "StorageUnavailable",
]
