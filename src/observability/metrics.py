"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOB_RETRIES,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_QUEUE_DEPTH,
    METRIC_WORKERS_BUSY,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue engine.

    Collects metrics for:
    - Queue depth per status
    - Job enqueues, claims, retries and terminal outcomes
    - Job execution duration
    - Busy worker slots
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
            "Number of jobs per status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type", "priority"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of jobs reaching a terminal state",
            ["job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job attempt duration in seconds",
            ["job_type", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.job_retries = Counter(
            METRIC_JOB_RETRIES,
            "Total number of retries scheduled",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by workers",
            ["worker_id"],
            registry=self._registry,
        )

        self.workers_busy = Gauge(
            METRIC_WORKERS_BUSY,
            "Number of worker slots executing a job",
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str, priority: int) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(job_type=job_type, priority=str(priority)).inc()

    def record_job_claimed(self, worker_id: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_attempt(self, job_type: str, status: str, duration_seconds: float) -> None:
        """Record the duration of one attempt and how it ended."""
        self.job_duration.labels(job_type=job_type, status=status).observe(duration_seconds)

    def record_job_finished(self, job_type: str, status: str) -> None:
        """Record a job reaching a terminal state."""
        self.jobs_finished.labels(job_type=job_type, status=status).inc()

    def record_retry(self, job_type: str) -> None:
        """Record a scheduled retry."""
        self.job_retries.labels(job_type=job_type).inc()

    def update_queue_depth(self, status: str, depth: int) -> None:
        """Update the number of jobs in a status."""
        self.queue_depth.labels(status=status).set(depth)

    def set_workers_busy(self, count: int) -> None:
        """Update the busy worker slot count."""
        self.workers_busy.set(count)

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """
        Expose this collector's registry over HTTP for Prometheus to scrape.

        Runs in a daemon thread for the life of the process.
        """
        start_http_server(port, addr=addr, registry=self._registry)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
