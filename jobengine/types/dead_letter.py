"""
Dead-letter entry definition.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from jobengine.constants import DeadLetterReason
from jobengine.types.job import BackoffSpec


@dataclass(frozen=True)
class DeadLetterEntry:
    """
    Durable record of a terminally failed job.
    Entries are append-only; requeueing never modifies them.
    """

    id: UUID
    job_id: UUID
    name: str
    payload: bytes
    priority: int
    max_attempts: int
    attempts_made: int
    stall_count: int
    reason: DeadLetterReason
    last_error: str | None
    error_category: str | None
    created_at: datetime
    backoff: BackoffSpec | None = None
