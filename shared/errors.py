"""
Shared error handling for the event backbone services.
"""

from typing import Any, Dict, List, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class BackboneException(Exception):
    """Base exception for backbone services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details,
        )


class AuthenticationError(BackboneException):
    """Authentication failure.

    The rendered message is always generic so that callers cannot tell which
    check failed. ``reason`` holds the internal cause and is only logged.
    """

    def __init__(self, reason: str = "unauthenticated", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHENTICATED", "Unauthenticated")
        self.reason = reason
        self.internal_details = details or {}


class KeySetFetchError(BackboneException):
    """Base class for key set retrieval failures."""

    code = "JWKS_FETCH_FAILED"

    def __init__(self, authority_url: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(self.code, message, {"authority_url": authority_url, **(details or {})})
        self.authority_url = authority_url


class FetchTimeout(KeySetFetchError):
    """The key set endpoint did not answer within the timeout."""

    code = "JWKS_FETCH_TIMEOUT"

    def __init__(self, authority_url: str, timeout: float):
        super().__init__(authority_url, "JWKS request timeout", {"timeout": timeout})
        self.timeout = timeout


class FetchUnavailable(KeySetFetchError):
    """The key set endpoint could not be reached or answered with a non-200 status."""

    code = "JWKS_FETCH_UNAVAILABLE"

    def __init__(self, authority_url: str, status_code: Optional[int] = None, message: Optional[str] = None):
        super().__init__(
            authority_url,
            message or f"Failed to fetch JWKS, status: {status_code}",
            {"status_code": status_code},
        )
        self.status_code = status_code


class MalformedResponse(KeySetFetchError):
    """The key set endpoint answered with a body that is not a valid key set."""

    code = "JWKS_MALFORMED_RESPONSE"

    def __init__(self, authority_url: str, message: str = "Invalid JWKS response format"):
        super().__init__(authority_url, message)


class PublishFailure(BackboneException):
    """The delivery runtime could not accept an event."""

    def __init__(self, topic: str, message: str = "Failed to publish event", details: Optional[Dict[str, Any]] = None):
        super().__init__("PUBLISH_FAILED", message, {"topic": topic, **(details or {})})
        self.topic = topic


class SchemaValidationError(BackboneException):
    """A payload does not conform to its topic schema."""

    def __init__(self, topic: str, errors: List[Dict[str, Any]]):
        super().__init__(
            "SCHEMA_VALIDATION_ERROR",
            f"Payload does not match schema for topic '{topic}'",
            {"topic": topic, "errors": errors},
        )
        self.topic = topic
        self.errors = errors


class ConfigurationError(BackboneException):
    """Misconfigured topics or subscriptions."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class UnknownTopicError(ConfigurationError):
    def __init__(self, topic: str):
        super().__init__(f"Unknown topic '{topic}'", {"topic": topic})
        self.topic = topic


class DuplicateSubscriptionError(ConfigurationError):
    def __init__(self, topic: str, consumer: str):
        super().__init__(
            f"Consumer '{consumer}' is already subscribed to '{topic}'",
            {"topic": topic, "consumer": consumer},
        )


class PermanentHandlerError(BackboneException):
    """Raised by a handler when retrying can never succeed."""

    def __init__(self, message: str = "Permanent handler failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERMANENT_HANDLER_ERROR", message, details)


class RetryableHandlerError(BackboneException):
    """Raised by a handler for a transient failure."""

    def __init__(self, message: str = "Retryable handler failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("RETRYABLE_HANDLER_ERROR", message, details)


class NotFoundError(BackboneException):
    """A record looked up through a collaborator interface does not exist."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class AggregateOperationError(BackboneException):
    """A fan-out operation failed part way through."""

    def __init__(self, operation: str, failed_service: str, services_affected: List[str]):
        super().__init__(
            "AGGREGATE_OPERATION_FAILED",
            f"{operation} failed on service '{failed_service}'",
            {
                "operation": operation,
                "failed_service": failed_service,
                "services_affected": list(services_affected),
            },
        )
        self.operation = operation
        self.failed_service = failed_service
        self.services_affected = list(services_affected)


class ServiceError(BackboneException):
    """Service-related errors."""

    def __init__(self, message: str = "Something went wrong", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)
