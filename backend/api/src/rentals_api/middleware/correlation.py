"""Correlation ID middleware for request tracing.

Each request runs with a correlation ID taken from `X-Correlation-ID` (or
generated), which every log line of the request carries and which is echoed
back so clients can quote it. A completed request is logged once with its
status and duration.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from rentals.utils.logging import clear_correlation_id, get_logger, set_correlation_id

CORRELATION_ID_HEADER = "X-Correlation-ID"
MAX_CORRELATION_ID_LENGTH = 128

logger = get_logger(__name__)


def _incoming_id(request: Request) -> str | None:
    """Accept a client-supplied ID only if it is short and printable."""
    value = request.headers.get(CORRELATION_ID_HEADER)
    if value and len(value) <= MAX_CORRELATION_ID_LENGTH and value.isprintable():
        return value
    return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds a correlation ID to the request context and response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = set_correlation_id(_incoming_id(request))
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            logger.log(
                logging.WARNING if response.status_code >= 500 else logging.INFO,
                "%s %s -> %d (%.1f ms)",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
            )
            return response
        finally:
            clear_correlation_id()
