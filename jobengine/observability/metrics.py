"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from jobengine.constants import (
    METRIC_DEAD_LETTERS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CREATED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_PROMOTED,
    METRIC_JOBS_RETRIED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_STALLED,
    METRIC_QUEUE_DEPTH,
    JobState,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue engine.

    Collects metrics for:
    - Queue depth per state
    - Job creations, retries and terminal outcomes
    - Active duration of finished jobs
    - Lease grants and stalls
    - Delayed job promotions and dead letters
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per state",
            ["state"],
            registry=self._registry,
        )

        self.jobs_created = Counter(
            METRIC_JOBS_CREATED,
            "Total number of jobs created",
            ["name", "initial_state"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs reaching a terminal state",
            ["name", "state"],
            registry=self._registry,
        )

        self.jobs_retried = Counter(
            METRIC_JOBS_RETRIED,
            "Total number of failures scheduled for retry",
            ["name"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Time from lease grant to worker report in seconds",
            ["name", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases granted",
            ["worker_id"],
            registry=self._registry,
        )

        self.lease_stalled = Counter(
            METRIC_LEASE_STALLED,
            "Total number of leases that expired without a report",
            ["name"],
            registry=self._registry,
        )

        self.jobs_promoted = Counter(
            METRIC_JOBS_PROMOTED,
            "Total number of delayed jobs promoted to waiting",
            registry=self._registry,
        )

        self.dead_letters = Counter(
            METRIC_DEAD_LETTERS,
            "Total number of jobs moved to the dead-letter store",
            ["reason"],
            registry=self._registry,
        )

    def record_job_created(self, name: str, state: JobState) -> None:
        """Record a job creation."""
        self.jobs_created.labels(name=name, initial_state=state.value).inc()

    def record_job_finished(self, name: str, state: JobState) -> None:
        """Record a job reaching a terminal state."""
        self.jobs_finished.labels(name=name, state=state.value).inc()

    def record_job_retried(self, name: str) -> None:
        self.jobs_retried.labels(name=name).inc()

    def observe_duration(self, name: str, outcome: str, duration_seconds: float) -> None:
        """Record how long a job held its lease before reporting."""
        self.job_duration.labels(name=name, outcome=outcome).observe(max(0.0, duration_seconds))

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def record_lease_stalled(self, name: str) -> None:
        """Record an expired lease."""
        self.lease_stalled.labels(name=name).inc()

    def record_promoted(self, count: int) -> None:
        if count:
            self.jobs_promoted.inc(count)

    def record_dead_letter(self, reason: str) -> None:
        self.dead_letters.labels(reason=reason).inc()

    def update_queue_depth(self, counts: dict[JobState, int]) -> None:
        """Set the depth gauge for every state, zero for absent ones."""
        for state in JobState:
            self.queue_depth.labels(state=state.value).set(counts.get(state, 0))

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, also serve /metrics on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port, registry=_metrics._registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
