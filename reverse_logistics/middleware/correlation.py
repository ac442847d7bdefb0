# ==== CORRELATION ID MIDDLEWARE ==== #

"""
Correlation ID middleware for request tracing.

Every request gets a correlation id (taken from ``X-Correlation-Id`` or
generated), stored on ``request.state``, bound into the loguru context for
every log line of the request, attached to the request span and echoed in
the response headers. Error responses carry the same id.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from reverse_logistics.observability.logging import log_performance
from reverse_logistics.observability.tracing import get_tracer


# ==== MODULE INITIALIZATION ==== #

tracer = get_tracer(__name__)

CORRELATION_HEADER = "X-Correlation-Id"


def get_correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


# ==== CORRELATION MIDDLEWARE CLASS ==== #

class CorrelationMiddleware(BaseHTTPMiddleware):
    """Add correlation IDs to requests, logs, spans and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request with correlation ID tracking.

        Args:
            request (Request): Incoming HTTP request
            call_next (Callable): Next middleware/handler in chain

        Returns:
            Response: HTTP response with correlation ID header
        """
        # --► CORRELATION ID MANAGEMENT
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()

        # --► DISTRIBUTED TRACING
        with logger.contextualize(correlation_id=correlation_id), \
                tracer.start_as_current_span("http_request") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.route", request.url.path)
            span.set_attribute("correlation_id", correlation_id)

            response = await call_next(request)

            # --► RESPONSE HEADER INJECTION
            response.headers[CORRELATION_HEADER] = correlation_id
            span.set_attribute("http.status_code", response.status_code)

            log_performance(
                f"{request.method} {request.url.path}",
                time.perf_counter() - start_time,
                status_code=response.status_code,
                correlation_id=correlation_id,
            )
            return response
