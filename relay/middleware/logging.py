"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and records the request
metrics.
"""
import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from relay.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: request_id, route, method, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        request.state.request_id = request_id

        # Bind context to logger for this request
        request_logger = logger.bind(
            request_id=request_id,
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, _endpoint(request), 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000

        request_logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        track_request(request.method, _endpoint(request), response.status_code, duration_ms / 1000)

        response.headers["X-Request-Id"] = request_id
        return response


def _endpoint(request: Request) -> str:
    """Matched route template, falling back to the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path
