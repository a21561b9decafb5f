"""Request middleware for tracing and logging."""

import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ralloc.logging import bind_context, clear_context, get_logger
from ralloc.metrics import record_request

logger = get_logger(__name__)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Binds request_id, correlation_id and actor to every log line of a request.

    The correlation id comes from ``X-Correlation-ID`` and the actor from
    ``X-Actor`` when the caller sends them. Both ids are echoed back as
    response headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())[:8]

        clear_context()
        bind_context(
            request_id=request_id,
            correlation_id=correlation_id,
            actor=request.headers.get("X-Actor"),
            method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start_time) * 1000

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            # /metrics scrapes would only measure themselves
            if not request.url.path.startswith("/metrics"):
                record_request(
                    method=request.method,
                    path=_route_path(request),
                    status_code=response.status_code,
                    duration=duration_ms / 1000,
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            raise

        finally:
            clear_context()


def _route_path(request: Request) -> str:
    """Route template (``/v1/allocations/{allocation_id}``) to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
