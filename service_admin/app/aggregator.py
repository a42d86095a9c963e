"""
Sequential fan-out of a maintenance operation.

Services are visited in their configured order, one at a time. The first
failure stops the run: services after it are never called, and the error
names the failing service together with every service already affected.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from pydantic import BaseModel

from shared.errors import AggregateOperationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.observability import ObservabilitySink

ServiceOperation = Callable[[str], Awaitable[Any]]


class AggregateResult(BaseModel):
    success: bool
    message: str
    services_affected: List[str]
    timestamp: str


class AdminAggregator:
    """Runs one operation against an ordered list of services."""

    def __init__(
        self,
        services: Sequence[str],
        *,
        metrics: Optional[MetricsCollector] = None,
        sink: Optional[ObservabilitySink] = None,
    ):
        self.services = list(services)
        self.metrics = metrics or get_metrics_collector("admin")
        self.sink = sink or ObservabilitySink("admin", self.metrics)
        self.logger = get_logger("admin.aggregator")

    async def perform_across_services(self, operation_name: str, operation: ServiceOperation) -> AggregateResult:
        """Call ``operation(service)`` for each service in order.

        Raises AggregateOperationError, chained from the original exception,
        on the first failure.
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        services_affected: List[str] = []

        self.logger.info("Starting operation across services", operation=operation_name, services=self.services)

        for service in self.services:
            self.logger.info("Running operation on service", operation=operation_name, service=service)
            try:
                await operation(service)
            except Exception as e:
                self.metrics.increment_counter("admin_operations_total", status="failed")
                self.sink.capture_exception(
                    e,
                    tags={"operation": operation_name, "failed_service": service},
                    extra={"services_affected": list(services_affected), "timestamp": timestamp},
                )
                raise AggregateOperationError(operation_name, service, services_affected) from e
            services_affected.append(service)

        self.metrics.increment_counter("admin_operations_total", status="success")
        self.logger.info(
            "Operation completed across services",
            operation=operation_name,
            services_affected=services_affected,
            timestamp=timestamp,
        )
        return AggregateResult(
            success=True,
            message=f"Successfully completed {operation_name} for {len(services_affected)} services",
            services_affected=services_affected,
            timestamp=timestamp,
        )
