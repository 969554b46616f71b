"""Queue engine components."""

from jobengine.engine.backoff import (
    DO_NOT_RETRY,
    BackoffPolicy,
    CustomBackoff,
    ExponentialBackoff,
    FixedBackoff,
)
from jobengine.engine.events import EventChannel, Subscription
from jobengine.engine.queue import JobQueue

__all__ = [
    "DO_NOT_RETRY",
    "BackoffPolicy",
    "CustomBackoff",
    "EventChannel",
    "ExponentialBackoff",
    "FixedBackoff",
    "JobQueue",
    "Subscription",
]
