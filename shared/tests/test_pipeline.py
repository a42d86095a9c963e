"""
Unit tests for the request pipeline and error translation.
"""

import pytest

from shared.errors import AuthenticationError, BackboneException, ServiceError
from shared.metrics import MetricsCollector
from shared.observability import ObservabilitySink
from shared.pipeline import (
    ErrorTranslationInterceptor,
    Interceptor,
    RequestContext,
    RequestPipeline,
)


class RecordingInterceptor(Interceptor):
    def __init__(self, name, calls):
        self.name = name
        self.calls = calls

    async def before(self, ctx):
        self.calls.append(f"{self.name}.before")

    async def after(self, ctx, result):
        self.calls.append(f"{self.name}.after")
        return result

    async def on_error(self, ctx, error):
        self.calls.append(f"{self.name}.on_error")
        return error


class TestRequestPipeline:
    """Test cases for RequestPipeline."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("test")

    @pytest.fixture
    def sink(self, metrics):
        return ObservabilitySink("test", metrics)

    @pytest.mark.asyncio
    async def test_interceptor_order(self):
        """Test the first interceptor wraps the rest."""
        calls = []
        pipeline = RequestPipeline([RecordingInterceptor("outer", calls), RecordingInterceptor("inner", calls)])

        async def handler(ctx):
            calls.append("handler")
            return "ok"

        result = await pipeline.run(RequestContext(), handler)

        assert result == "ok"
        assert calls == ["outer.before", "inner.before", "handler", "inner.after", "outer.after"]

    @pytest.mark.asyncio
    async def test_on_error_runs_innermost_first(self):
        """Test errors unwind through on_error hooks."""
        calls = []
        pipeline = RequestPipeline([RecordingInterceptor("outer", calls), RecordingInterceptor("inner", calls)])

        async def handler(ctx):
            raise BackboneException("BOOM", "boom")

        with pytest.raises(BackboneException):
            await pipeline.run(RequestContext(), handler)

        assert calls == ["outer.before", "inner.before", "inner.on_error", "outer.on_error"]

    @pytest.mark.asyncio
    async def test_headers_are_case_insensitive(self):
        """Test header lookup ignores case."""
        ctx = RequestContext(headers={"Authorization": "Bearer abc"})

        assert ctx.header("authorization") == "Bearer abc"
        assert ctx.header("AUTHORIZATION") == "Bearer abc"

    @pytest.mark.asyncio
    async def test_unknown_error_becomes_service_error(self, sink, metrics):
        """Test unexpected exceptions are captured and replaced by a generic error."""
        pipeline = RequestPipeline([ErrorTranslationInterceptor(sink)])

        async def handler(ctx):
            raise RuntimeError("database password is hunter2")

        with pytest.raises(ServiceError) as exc_info:
            await pipeline.run(RequestContext(path="/x"), handler)

        assert exc_info.value.message == "Something went wrong"
        assert "hunter2" not in str(exc_info.value.to_response().model_dump())
        assert exc_info.value.details["trace_id"]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert metrics.sample("errors_total", error_type="RuntimeError", service="test") == 1.0

    @pytest.mark.asyncio
    async def test_authentication_error_passes_through_generic(self, sink):
        """Test authentication failures keep their generic message."""
        pipeline = RequestPipeline([ErrorTranslationInterceptor(sink)])

        async def handler(ctx):
            raise AuthenticationError("token_expired")

        with pytest.raises(AuthenticationError) as exc_info:
            await pipeline.run(RequestContext(), handler)

        response = exc_info.value.to_response()
        assert response.code == "UNAUTHENTICATED"
        assert response.message == "Unauthenticated"
        assert "token_expired" not in response.model_dump_json()
