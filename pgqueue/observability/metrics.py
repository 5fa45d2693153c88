"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    start_http_server,
)

from pgqueue.constants import (
    METRIC_HANDLER_DURATION,
    METRIC_ITEMS_FINALIZED,
    METRIC_ITEMS_PUSHED,
    METRIC_ITEMS_SCHEDULED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LOOP_ERRORS,
    METRIC_SCHEDULES_TRIGGERED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the queue.

    Collects metrics for:
    - Items pushed, scheduled and finalized
    - Handler execution duration
    - Work queue leases
    - Schedule triggers
    - Poll loop errors
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.items_pushed = Counter(
            METRIC_ITEMS_PUSHED,
            "Total number of queue items pushed",
            ["tenant_id", "queue"],
            registry=self._registry,
        )

        self.items_scheduled = Counter(
            METRIC_ITEMS_SCHEDULED,
            "Total number of queue items leased into the work queue",
            ["tenant_id"],
            registry=self._registry,
        )

        self.items_finalized = Counter(
            METRIC_ITEMS_FINALIZED,
            "Total number of handler runs by outcome",
            ["tenant_id", "state"],
            registry=self._registry,
        )

        self.handler_duration = Histogram(
            METRIC_HANDLER_DURATION,
            "Handler execution duration in seconds",
            ["type", "state"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of work queue leases acquired",
            ["node_id"],
            registry=self._registry,
        )

        self.schedules_triggered = Counter(
            METRIC_SCHEDULES_TRIGGERED,
            "Total number of schedule triggers",
            ["tenant_id"],
            registry=self._registry,
        )

        self.loop_errors = Counter(
            METRIC_LOOP_ERRORS,
            "Total number of failed poll loop ticks",
            ["loop"],
            registry=self._registry,
        )

    def record_item_pushed(self, tenant_id: str, queue: str) -> None:
        """Record a push."""
        self.items_pushed.labels(tenant_id=tenant_id, queue=queue).inc()

    def record_items_scheduled(self, tenant_id: str, count: int = 1) -> None:
        """Record items leased into the work queue."""
        self.items_scheduled.labels(tenant_id=tenant_id).inc(count)

    def record_item_finalized(
        self,
        tenant_id: str,
        item_type: str,
        state: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of a handler run."""
        self.items_finalized.labels(tenant_id=tenant_id, state=state).inc()
        self.handler_duration.labels(type=item_type, state=state).observe(duration_seconds)

    def record_lease_acquired(self, node_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(node_id=node_id).inc(count)

    def record_schedule_triggered(self, tenant_id: str) -> None:
        self.schedules_triggered.labels(tenant_id=tenant_id).inc()

    def record_loop_error(self, loop: str) -> None:
        self.loop_errors.labels(loop=loop).inc()


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: When given, expose the default registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
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
