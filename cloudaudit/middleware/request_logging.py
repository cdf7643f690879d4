"""
Request logging middleware: trace id, latency and status per request.
"""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-ID"

# Polled by load balancers; logged at DEBUG only
QUIET_PATHS = ("/health", "/api/v1/health")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request with a trace id and echoes it in the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Reuse the caller's trace id so a request can be followed across services
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid.uuid4())
        request.state.trace_id = trace_id
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            latency_ms = int((time.perf_counter() - start_time) * 1000)
            logger.error(
                f"[{trace_id}] {request.method} {request.url.path} -> EXCEPTION after {latency_ms}ms: {exc}",
                exc_info=True
            )
            # Re-raise to let global exception handler deal with it
            raise

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        status_code = response.status_code
        if status_code >= 500:
            log_level = logging.ERROR
        elif status_code >= 400:
            log_level = logging.WARNING
        elif request.url.path in QUIET_PATHS:
            log_level = logging.DEBUG
        else:
            log_level = logging.INFO
        logger.log(log_level, f"[{trace_id}] {request.method} {request.url.path} -> {status_code} ({latency_ms}ms)")

        response.headers[TRACE_HEADER] = trace_id
        return response
