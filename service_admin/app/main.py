"""
Admin service.

Exposes the destructive maintenance directive ``DELETE /admin/databases/clear``.
Requests run through the explicit pipeline: error translation outermost, then
the admin-key check, then the handler.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST

from shared.config import ServiceConfig, get_config
from shared.errors import (
    AggregateOperationError,
    AuthenticationError,
    BackboneException,
    ServiceError,
)
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.observability import ObservabilitySink
from shared.pipeline import ErrorTranslationInterceptor, RequestContext, RequestPipeline
from shared.tracing import configure_tracing
from service_auth.app.interceptors import AdminKeyInterceptor

from .aggregator import AdminAggregator, AggregateResult
from .client import ServiceMaintenanceClient

CLEAR_DATABASES_OPERATION = "clear-databases"


def _request_context(request: Request) -> RequestContext:
    ctx = RequestContext(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        cookies=dict(request.cookies),
    )
    request_id = ctx.header("x-request-id")
    if request_id:
        ctx.request_id = request_id
    return ctx


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    maintenance: Optional[ServiceMaintenanceClient] = None,
    metrics: Optional[MetricsCollector] = None,
    sink: Optional[ObservabilitySink] = None,
) -> FastAPI:
    """Create the admin FastAPI application."""
    config = config or get_config("admin", 8020)
    configure_logging("admin", config.log_level)
    if config.enable_tracing:
        configure_tracing("admin", config.otlp_endpoint)

    logger = get_logger("admin.main")
    metrics = metrics or get_metrics_collector("admin")
    sink = sink or ObservabilitySink("admin", metrics)
    maintenance = maintenance or ServiceMaintenanceClient.from_config(config)
    aggregator = AdminAggregator(maintenance.service_names, metrics=metrics, sink=sink)

    admin_key = config.admin_api_key.get_secret_value() if config.admin_api_key else None
    pipeline = RequestPipeline([
        ErrorTranslationInterceptor(sink),
        AdminKeyInterceptor(admin_key),
    ])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Admin service starting", services=maintenance.service_names)
        yield
        await maintenance.close()
        logger.info("Admin service stopped")

    app = FastAPI(
        title="Admin Service",
        version="1.0.0",
        docs_url="/docs" if config.env == "local" else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    if config.enable_tracing:
        FastAPIInstrumentor.instrument_app(app)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "service": "admin",
            "status": "ok",
            "version": "1.0.0",
            "services": maintenance.service_names,
        }

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(content=metrics.export(), media_type=CONTENT_TYPE_LATEST)

    @app.delete("/admin/databases/clear", response_model=AggregateResult)
    async def clear_databases(request: Request):
        """Clear every service's non-reference data, one service at a time."""

        async def handler(ctx: RequestContext) -> AggregateResult:
            logger.warning("Destructive maintenance requested", operation=CLEAR_DATABASES_OPERATION)
            return await aggregator.perform_across_services(
                CLEAR_DATABASES_OPERATION, maintenance.clear_database
            )

        return await pipeline.run(_request_context(request), handler)

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content=exc.to_response().model_dump())

    @app.exception_handler(AggregateOperationError)
    async def aggregate_error_handler(request: Request, exc: AggregateOperationError):
        logger.error(
            "Aggregate operation failed",
            operation=exc.operation,
            failed_service=exc.failed_service,
            services_affected=exc.services_affected,
        )
        return JSONResponse(status_code=500, content=exc.to_response().model_dump())

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=500, content=exc.to_response().model_dump())

    @app.exception_handler(BackboneException)
    async def backbone_exception_handler(request: Request, exc: BackboneException):
        logger.error("Backbone error", code=exc.code, message=exc.message, details=exc.details)
        return JSONResponse(status_code=400, content=exc.to_response().model_dump())

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
        )

    app.state.aggregator = aggregator
    app.state.maintenance = maintenance
    app.state.metrics = metrics
    return app


if __name__ == "__main__":
    import uvicorn

    admin_config = get_config("admin", 8020)
    uvicorn.run(
        create_app(admin_config),
        host=admin_config.host,
        port=admin_config.port,
        log_level=admin_config.log_level.lower(),
    )
