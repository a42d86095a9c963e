"""
Observability sink for the event backbone services.

Components that must report unexpected failures receive an
``ObservabilitySink`` through their constructor. A capture writes one
structured log line, increments the ``errors_total`` counter and records an
``exception`` event on the current OpenTelemetry span, so the same failure can
be found from logs, dashboards and traces.
"""

import uuid
from typing import Any, Dict, Optional

from opentelemetry import trace

from .logging import get_logger
from .metrics import MetricsCollector, get_metrics_collector

_LEVELS = ("debug", "info", "warning", "error", "critical")


class ObservabilitySink:
    """Centralized exception capture for services."""

    def __init__(self, service_name: str, metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.metrics = metrics or get_metrics_collector(service_name)
        self.logger = get_logger(f"{service_name}.observability")

    def capture_exception(
        self,
        error: BaseException,
        *,
        tags: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
        level: str = "error",
    ) -> str:
        """Report an exception with diagnostic context. Returns the capture id."""
        if level not in _LEVELS:
            level = "error"
        capture_id = uuid.uuid4().hex
        error_type = type(error).__name__
        tags = dict(tags or {})
        extra = dict(extra or {})

        log = getattr(self.logger, level)
        log(
            "Exception captured",
            capture_id=capture_id,
            error_type=error_type,
            error=str(error),
            tags=tags,
            extra=extra,
        )

        self.metrics.record_error(error_type)

        span = trace.get_current_span()
        if span and span.is_recording():
            span.record_exception(
                error,
                attributes={f"tag.{key}": str(value) for key, value in tags.items()},
            )

        return capture_id

