"""
Request-processing pipeline.

A pipeline is an ordered list of interceptors composed around a handler. The
first interceptor is the outermost one: its ``before`` runs first, its
``after`` and ``on_error`` run last. ``on_error`` returns the exception to
propagate outward, either the one it received or a translation of it.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from .errors import AuthenticationError, BackboneException, ServiceError
from .logging import clear_context, get_logger, set_request_id
from .observability import ObservabilitySink

Handler = Callable[["RequestContext"], Awaitable[Any]]


@dataclass
class RequestContext:
    """Transport-independent view of an inbound request."""

    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    auth: Optional[Any] = None
    state: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Header lookups are case-insensitive.
        self.headers = {key.lower(): value for key, value in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class Interceptor:
    """Base interceptor; every hook is a no-op by default."""

    async def before(self, ctx: RequestContext) -> None:
        return None

    async def after(self, ctx: RequestContext, result: Any) -> Any:
        return result

    async def on_error(self, ctx: RequestContext, error: Exception) -> Exception:
        return error


class RequestPipeline:
    """Runs a handler inside an ordered chain of interceptors."""

    def __init__(self, interceptors: Sequence[Interceptor]):
        self.interceptors = list(interceptors)

    async def run(self, ctx: RequestContext, handler: Handler) -> Any:
        clear_context()
        set_request_id(ctx.request_id)
        return await self._call(0, ctx, handler)

    async def _call(self, index: int, ctx: RequestContext, handler: Handler) -> Any:
        if index == len(self.interceptors):
            return await handler(ctx)

        interceptor = self.interceptors[index]
        await interceptor.before(ctx)
        try:
            result = await self._call(index + 1, ctx, handler)
        except Exception as exc:
            error = await interceptor.on_error(ctx, exc)
            if error is exc:
                raise
            raise error from exc
        return await interceptor.after(ctx, result)


class ErrorTranslationInterceptor(Interceptor):
    """Outermost interceptor: known errors pass through, unknown ones become a generic ServiceError."""

    def __init__(self, sink: ObservabilitySink):
        self.sink = sink
        self.logger = get_logger("shared.pipeline")

    async def on_error(self, ctx: RequestContext, error: Exception) -> Exception:
        if isinstance(error, AuthenticationError):
            self.logger.warning(
                "Request rejected as unauthenticated",
                path=ctx.path,
                reason=error.reason,
                **error.internal_details,
            )
            return error

        if isinstance(error, BackboneException):
            self.logger.warning("Request failed", path=ctx.path, code=error.code, message=error.message)
            return error

        capture_id = self.sink.capture_exception(
            error,
            tags={"error-type": "unhandled", "error-source": "pipeline", "request_id": ctx.request_id},
            extra={"method": ctx.method, "path": ctx.path},
        )
        return ServiceError(details={"trace_id": capture_id})
