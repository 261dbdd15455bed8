"""
OpenTelemetry Tracing Middleware

FastAPI middleware for automatic request tracing with OpenTelemetry.
Outbox records written while handling a request carry its trace context,
so the relay and consumer spans join the request's trace.
"""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from ...core.observability.metrics import record_counter, record_histogram
from ...core.observability.tracing import extract_trace_context, get_tracer, get_trace_id

logger = logging.getLogger(__name__)


class TracingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that creates OpenTelemetry spans for HTTP requests.

    Features:
    - Extracts trace context from incoming headers
    - Creates request span
    - Records request metrics
    - Propagates trace_id to response
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip tracing for health endpoints
        if request.url.path.startswith("/health"):
            return await call_next(request)

        context = extract_trace_context(dict(request.headers))
        tracer = get_tracer()
        start_time = time.time()

        with tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            context=context,
            kind=trace.SpanKind.SERVER,
            attributes={
                "http.method": request.method,
                "http.route": request.url.path,
                "http.scheme": request.url.scheme,
            }
        ) as span:
            try:
                response = await call_next(request)
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                record_counter("http_requests_total", 1, {
                    "method": request.method,
                    "path": request.url.path,
                    "status": "500"
                })
                raise

            span.set_attribute("http.status_code", response.status_code)
            record_counter("http_requests_total", 1, {
                "method": request.method,
                "path": request.url.path,
                "status": str(response.status_code)
            })
            record_histogram("http_request_duration_seconds", time.time() - start_time, {
                "method": request.method,
                "path": request.url.path
            })

            trace_id = get_trace_id()
            if trace_id:
                response.headers["X-Trace-ID"] = trace_id
            return response
