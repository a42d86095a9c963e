"""
Unit tests for AdminAggregator and ServiceMaintenanceClient.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from shared.errors import AggregateOperationError, ConfigurationError
from shared.metrics import MetricsCollector
from service_admin.app.aggregator import AdminAggregator
from service_admin.app.client import ServiceMaintenanceClient


class TestAdminAggregator:
    """Test cases for AdminAggregator."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("admin")

    @pytest.fixture
    def sink(self):
        return MagicMock()

    @pytest.mark.asyncio
    async def test_all_services_succeed(self, metrics, sink):
        """Test services are visited in order and all reported as affected."""
        visited = []

        async def operation(service):
            visited.append(service)

        aggregator = AdminAggregator(["core", "identity", "job", "resume"], metrics=metrics, sink=sink)

        result = await aggregator.perform_across_services("clear-databases", operation)

        assert result.success is True
        assert result.services_affected == ["core", "identity", "job", "resume"]
        assert visited == ["core", "identity", "job", "resume"]
        assert result.timestamp
        assert metrics.sample("admin_operations_total", status="success") == 1.0

    @pytest.mark.asyncio
    async def test_failure_stops_the_sequence(self, metrics, sink):
        """Test B failing reports A as affected and never calls C."""
        cause = RuntimeError("B is down")
        operation = AsyncMock(side_effect=[None, cause, None])
        aggregator = AdminAggregator(["A", "B", "C"], metrics=metrics, sink=sink)

        with pytest.raises(AggregateOperationError) as exc_info:
            await aggregator.perform_across_services("clear-databases", operation)

        error = exc_info.value
        assert error.failed_service == "B"
        assert error.services_affected == ["A"]
        assert error.details["services_affected"] == ["A"]
        assert error.__cause__ is cause
        assert [call.args[0] for call in operation.await_args_list] == ["A", "B"]
        sink.capture_exception.assert_called_once()
        assert metrics.sample("admin_operations_total", status="failed") == 1.0

    @pytest.mark.asyncio
    async def test_first_service_failing_affects_none(self, metrics, sink):
        """Test a failure on the first service reports nothing affected."""
        operation = AsyncMock(side_effect=ConnectionError("refused"))
        aggregator = AdminAggregator(["A", "B"], metrics=metrics, sink=sink)

        with pytest.raises(AggregateOperationError) as exc_info:
            await aggregator.perform_across_services("clear-databases", operation)

        assert exc_info.value.services_affected == []
        assert operation.await_count == 1


class TestServiceMaintenanceClient:
    """Test cases for ServiceMaintenanceClient."""

    @pytest.mark.asyncio
    async def test_clear_database_calls_internal_endpoint(self):
        """Test the clear directive is a DELETE on the service's maintenance path."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"success": True})

        client = ServiceMaintenanceClient(
            {"core": "http://core:4001/"},
            httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        await client.clear_database("core")

        assert requests[0].method == "DELETE"
        assert str(requests[0].url) == "http://core:4001/internal/maintenance/clear"

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        """Test a failing service raises so the aggregator can stop."""
        client = ServiceMaintenanceClient(
            {"core": "http://core:4001"},
            httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )

        with pytest.raises(httpx.HTTPStatusError):
            await client.clear_database("core")

    @pytest.mark.asyncio
    async def test_unknown_service(self):
        """Test only configured services can be addressed."""
        client = ServiceMaintenanceClient({"core": "http://core:4001"})

        with pytest.raises(ConfigurationError):
            await client.clear_database("billing")

        await client.close()
