"""FastAPI exception handlers for converting RentalError to HTTP responses.

The ErrorCode-to-HTTP status mapping:
- 400 Bad Request: validation, not overdue, webhook signature or payload
- 401 Unauthorized: missing or invalid bearer token
- 403 Forbidden: access gate step incomplete
- 404 Not Found: missing rental, wrong role, or wrong state for a scoped transition
- 409 Conflict: concurrent modification (safe to retry)
- 502 Bad Gateway: payment processor rejected or failed the call
- 504 Gateway Timeout: processor outcome unknown (retry with the same request)

Usage:
    from rentals_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_502_BAD_GATEWAY,
    HTTP_504_GATEWAY_TIMEOUT,
)

from rentals.models import ErrorCode, ErrorResponse, RentalError

logger = logging.getLogger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    # Input validation -> 400
    ErrorCode.INVALID_INPUT: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_DATE_RANGE: HTTP_400_BAD_REQUEST,
    ErrorCode.DURATION_OUT_OF_BOUNDS: HTTP_400_BAD_REQUEST,
    ErrorCode.SELF_RENTAL: HTTP_400_BAD_REQUEST,
    ErrorCode.LISTING_UNAVAILABLE: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_AMOUNT: HTTP_400_BAD_REQUEST,
    ErrorCode.NO_LATE_FEE_CONFIGURED: HTTP_400_BAD_REQUEST,
    # Not found, not yours, or not reachable from the current state -> 404
    ErrorCode.RENTAL_NOT_FOUND: HTTP_404_NOT_FOUND,
    # Stateless precondition -> 400
    ErrorCode.NOT_OVERDUE: HTTP_400_BAD_REQUEST,
    ErrorCode.CONCURRENT_MODIFICATION: HTTP_409_CONFLICT,
    ErrorCode.AUTH_REQUIRED: HTTP_401_UNAUTHORIZED,
    ErrorCode.ACCESS_GATE_REQUIRED: HTTP_403_FORBIDDEN,
    # Webhook authentication and parsing -> 400 (sender keeps its own health stats)
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: HTTP_400_BAD_REQUEST,
    ErrorCode.MALFORMED_WEBHOOK: HTTP_400_BAD_REQUEST,
    ErrorCode.STRIPE_API_ERROR: HTTP_502_BAD_GATEWAY,
    ErrorCode.STRIPE_TIMEOUT: HTTP_504_GATEWAY_TIMEOUT,
}


def get_http_status_for_error(code: ErrorCode) -> int:
    """Get HTTP status code for an ErrorCode (400 if not explicitly mapped)."""
    return ERROR_CODE_TO_HTTP_STATUS.get(code, HTTP_400_BAD_REQUEST)


async def rental_error_handler(request: Request, exc: RentalError) -> JSONResponse:
    """Convert a RentalError to an ErrorResponse with the mapped status code."""
    status_code = get_http_status_for_error(exc.code)
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code.value)
    return JSONResponse(
        status_code=status_code,
        content=exc.to_response().model_dump(mode="json"),
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies as 400 with the standard error body."""
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    response = ErrorResponse.from_code(ErrorCode.INVALID_INPUT, details={"errors": errors})
    return JSONResponse(status_code=HTTP_400_BAD_REQUEST, content=response.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(RentalError, rental_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, request_validation_handler)  # type: ignore[arg-type]
