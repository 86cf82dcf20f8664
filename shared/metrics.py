"""
Shared metrics configuration for the tiered cache layer.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager


class MetricsCollector:
    """Centralized Prometheus metrics for the cache layer."""

    def __init__(self, service_name: str = "cache", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""

        self._metrics["service_info"] = Info(
            "cache_service",
            "Cache layer information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["namespace", "tier"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["namespace", "tier"],
            registry=self.registry
        )

        self._metrics["cache_sets_total"] = Counter(
            "cache_sets_total",
            "Total cache writes",
            ["namespace", "tier"],
            registry=self.registry
        )

        self._metrics["cache_deletes_total"] = Counter(
            "cache_deletes_total",
            "Total cache deletes",
            ["namespace", "tier"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Local tier entries evicted under memory pressure",
            registry=self.registry
        )

        self._metrics["cache_refreshes_total"] = Counter(
            "cache_refreshes_total",
            "Refresh-ahead executions",
            ["namespace", "result"],
            registry=self.registry
        )

        self._metrics["shared_tier_errors_total"] = Counter(
            "shared_tier_errors_total",
            "Shared tier operations that failed and were absorbed",
            ["operation"],
            registry=self.registry
        )

        self._metrics["cache_fetch_duration_seconds"] = Histogram(
            "cache_fetch_duration_seconds",
            "Duration of fetch functions invoked on cache misses",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_local_bytes"] = Gauge(
            "cache_local_bytes",
            "Estimated bytes resident in the local tier",
            registry=self.registry
        )

        self._metrics["loader_batches_total"] = Counter(
            "loader_batches_total",
            "Batches dispatched by batched loaders",
            ["loader", "result"],
            registry=self.registry
        )

        self._metrics["loader_batch_size"] = Histogram(
            "loader_batch_size",
            "Keys sent to the backing source per batch",
            ["loader"],
            buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500),
            registry=self.registry
        )

        self._metrics["loader_coalesced_total"] = Counter(
            "loader_coalesced_total",
            "Loads that attached to an already queued or in-flight key",
            ["loader"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).observe(value)

    def sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read back the current value of a counter or gauge sample."""
        sample_name = metric_name
        if metric_name in self._metrics and isinstance(self._metrics[metric_name], Counter):
            if not sample_name.endswith("_total"):
                sample_name = f"{sample_name}_total"
        return self.registry.get_sample_value(sample_name, labels or None)


def get_metrics_collector(service_name: str = "cache", registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for the cache layer."""
    return MetricsCollector(service_name, registry)
