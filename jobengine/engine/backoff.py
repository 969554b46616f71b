"""
Retry backoff policies.

A policy maps (attempts made, error) to the delay before the next
attempt, or to None when the job must not be retried at all.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Final

from jobengine.config import Settings
from jobengine.constants import BackoffType
from jobengine.types.job import BackoffSpec, JobError


class _DoNotRetry:
    def __repr__(self) -> str:
        return "DO_NOT_RETRY"


# Returned by a custom backoff function to dead-letter the job immediately
DO_NOT_RETRY: Final = _DoNotRetry()

BackoffFunction = Callable[[int, JobError], "float | _DoNotRetry"]


class BackoffPolicy(ABC):
    """Computes retry delays."""

    @abstractmethod
    def next_delay(self, attempts_made: int, error: JobError) -> float | None:
        """
        Delay in seconds before the next attempt.

        Args:
            attempts_made: Attempts including the one that just failed.
            error: The reported failure.

        Returns:
            Seconds to wait, or None to stop retrying.
        """


class FixedBackoff(BackoffPolicy):
    """Same delay after every failure."""

    def __init__(self, delay: float):
        self.delay = max(0.0, delay)

    def next_delay(self, attempts_made: int, error: JobError) -> float | None:
        return self.delay

    def __repr__(self) -> str:
        return f"FixedBackoff(delay={self.delay})"


class ExponentialBackoff(BackoffPolicy):
    """delay * base^(attempts_made - 1), optionally capped."""

    def __init__(self, delay: float, base: float = 2.0, max_delay: float | None = None):
        self.delay = max(0.0, delay)
        self.base = base
        self.max_delay = max_delay

    def next_delay(self, attempts_made: int, error: JobError) -> float | None:
        exponent = max(0, attempts_made - 1)
        try:
            value = self.delay * self.base**exponent
        except OverflowError:
            value = float("inf")
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value

    def __repr__(self) -> str:
        return (
            f"ExponentialBackoff(delay={self.delay}, base={self.base}, "
            f"max_delay={self.max_delay})"
        )


class CustomBackoff(BackoffPolicy):
    """
    Delegates to a user function taking (attempts_made, error).

    The function may return DO_NOT_RETRY, typically keyed on
    error.category (e.g. "validation").
    """

    def __init__(self, func: BackoffFunction):
        self.func = func

    def next_delay(self, attempts_made: int, error: JobError) -> float | None:
        value = self.func(attempts_made, error)
        if value is DO_NOT_RETRY or value is None:
            return None
        return max(0.0, float(value))


def policy_from_spec(spec: BackoffSpec, custom: BackoffPolicy | None = None) -> BackoffPolicy:
    """
    Build a policy from a serialized per-job spec.

    Raises:
        ValueError: If the backoff type is custom and no custom policy is registered.
    """
    if spec.type == BackoffType.FIXED:
        return FixedBackoff(spec.delay)
    if spec.type == BackoffType.EXPONENTIAL:
        return ExponentialBackoff(spec.delay, spec.base, spec.max_delay)
    if custom is None:
        raise ValueError("Job requests custom backoff but no custom policy is registered")
    return custom


def policy_from_settings(settings: Settings) -> BackoffPolicy:
    """Build the engine-wide default policy."""
    if settings.backoff_type == BackoffType.FIXED:
        return FixedBackoff(settings.backoff_delay_seconds)
    return ExponentialBackoff(
        settings.backoff_delay_seconds,
        settings.backoff_base,
        settings.backoff_max_delay_seconds,
    )
