"""
Shared utilities for the event backbone services.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and delivery correlation
- metrics: Prometheus metrics helpers
- observability: Exception capture sink (logs, metrics, spans)
- errors: Canonical error types and responses
- retry: Backoff policy for redelivery
- pipeline: Interceptor chain for request processing
- tracing: OpenTelemetry tracer setup and span helpers
- test_helpers: Signing keys, token minting and in-memory collaborators for tests

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
