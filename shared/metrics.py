"""
Shared metrics configuration for the event backbone services.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so that several runtimes (or several
    tests) in one process never collide on metric registration.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry,
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0",
        })

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry,
        )

        self._setup_event_metrics()
        self._setup_auth_metrics()

        self._metrics["admin_operations_total"] = Counter(
            "admin_operations_total",
            "Total admin fan-out operations",
            ["status"],
            registry=self.registry,
        )

    def _setup_event_metrics(self):
        """Set up delivery runtime metrics."""
        self._metrics["events_published_total"] = Counter(
            "events_published_total",
            "Total events accepted by the delivery runtime",
            ["topic"],
            registry=self.registry,
        )

        self._metrics["publish_failures_total"] = Counter(
            "publish_failures_total",
            "Total events the delivery runtime could not accept",
            ["topic"],
            registry=self.registry,
        )

        self._metrics["deliveries_total"] = Counter(
            "deliveries_total",
            "Total delivery attempts by outcome",
            ["topic", "subscription", "outcome"],
            registry=self.registry,
        )

        self._metrics["dead_letters_total"] = Counter(
            "dead_letters_total",
            "Total dead-lettered deliveries",
            ["topic", "subscription"],
            registry=self.registry,
        )

        self._metrics["delivery_duration_seconds"] = Histogram(
            "delivery_duration_seconds",
            "Handler execution time in seconds",
            ["topic", "subscription"],
            registry=self.registry,
        )

    def _setup_auth_metrics(self):
        """Set up token verification metrics."""
        self._metrics["token_verifications_total"] = Counter(
            "token_verifications_total",
            "Total token verifications",
            ["status"],
            registry=self.registry,
        )

        self._metrics["jwks_fetch_total"] = Counter(
            "jwks_fetch_total",
            "Total JWKS network fetches",
            ["status"],
            registry=self.registry,
        )

        self._metrics["jwks_fetch_duration_seconds"] = Histogram(
            "jwks_fetch_duration_seconds",
            "JWKS fetch duration in seconds",
            registry=self.registry,
        )

        self._metrics["jwks_cache_total"] = Counter(
            "jwks_cache_total",
            "JWKS cache lookups by result",
            ["result"],
            registry=self.registry,
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def sample(self, name: str, **labels) -> float:
        """Return the current value of a sample, 0.0 when it has not been recorded."""
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            metric = self._metrics.get(operation_name)
            if metric is not None:
                if labels:
                    metric = metric.labels(**labels)
                metric.observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
