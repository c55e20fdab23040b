"""
FastAPI middleware for observability.

Provides:
- Request correlation ID injection
- Request/response logging with timing
- Request timeout protection
"""
import asyncio
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse

from metrics_sync.observability import (
    get_logger,
    generate_correlation_id,
    set_correlation_id,
    get_correlation_id,
    request_stats,
)

logger = get_logger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0

# Health checks are polled constantly
QUIET_PATHS = ("/health",)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a correlation ID to each request and logs it with timing."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or generate_correlation_id()
        set_correlation_id(correlation_id)

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        quiet = path in QUIET_PATHS

        if not quiet:
            logger.info(f"Request started: {method} {path}", extra={"method": method, "path": path})

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                f"Request failed: {method} {path}",
                extra={"method": method, "path": path, "duration_ms": round(duration_ms, 2), "error": str(e)},
            )
            request_stats.record(f"{method} {path}", duration_ms, error=type(e).__name__)
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Request-ID"] = correlation_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        if not quiet:
            level_name = "info" if response.status_code < 400 else "warning"
            getattr(logger, level_name)(
                f"Request completed: {method} {path}",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )

        error = f"HTTP_{response.status_code}" if response.status_code >= 400 else None
        request_stats.record(f"{method} {path}", duration_ms, error=error)
        return response


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Returns 504 when a request exceeds the timeout."""

    def __init__(self, app, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Request timeout: {request.method} {path}",
                extra={"method": request.method, "path": path, "timeout": self.timeout},
            )
            return JSONResponse(
                status_code=504,
                content={
                    "error": "Request Timeout",
                    "detail": f"Request exceeded {self.timeout}s timeout",
                    "path": path,
                    "correlation_id": get_correlation_id(),
                },
            )
