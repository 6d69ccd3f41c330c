"""Logging with request correlation for the rental service.

Every line carries the correlation ID of the request (or webhook delivery)
that produced it, so one rental transition can be followed from the route
through the engine to the processor call:

    [3f2c...] 2025-07-01 12:00:00 INFO rentals.services.rental_engine: approve | rental_id=r-1 | ...

Usage:
    from rentals.utils.logging import get_logger, log_payment_operation

    logger = get_logger(__name__)
    log_payment_operation(logger, "approve", rental_id="r-1", status="approved")

Structured fields are also attached to the record as `record.context` for
log processors that read extras.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

NO_CORRELATION_ID = "no-correlation-id"

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation ID to the current context, generating one if needed.

    Returns:
        The correlation ID now in effect
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Stamps records with the current correlation ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return True


class StructuredFormatter(logging.Formatter):
    """Prefixes each line with the record's correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None) or get_correlation_id() or NO_CORRELATION_ID
        return f"[{cid}] {super().format(record)}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger whose records always carry a correlation ID."""
    logger = logging.getLogger(name)
    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())
    return logger


def configure_logging(level: int = logging.INFO) -> None:
    """Install the structured formatter on the root logger once."""
    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(h.formatter, StructuredFormatter) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)


def _context(**fields: Any) -> dict[str, Any]:
    """Drop unset fields; zero amounts and False flags are kept."""
    return {key: value for key, value in fields.items() if value is not None and value != ""}


def _render(headline: str, context: dict[str, Any], skip: tuple[str, ...] = ()) -> str:
    parts = [headline]
    parts.extend(f"{key}={value}" for key, value in context.items() if key not in skip)
    return " | ".join(parts)


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    rental_id: str | None = None,
    payment_intent_id: str | None = None,
    amount_cents: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a rental transition or processor call.

    Logged at ERROR when `error` is given, INFO otherwise.

    Args:
        logger: Logger to write to
        operation: Transition or gateway call, e.g. "approve", "refund"
        rental_id: Rental the operation applies to
        payment_intent_id: Processor handle for the hold or charge
        amount_cents: Amount moved or held
        status: Rental status after the operation
        payment_status: Payment status after the operation
        error: Failure description
        **extra: Further fields, e.g. idempotency_key
    """
    context = _context(
        operation=operation,
        rental_id=rental_id,
        payment_intent_id=payment_intent_id,
        amount_cents=amount_cents,
        status=status,
        payment_status=payment_status,
        error=error,
        **extra,
    )
    level = logging.ERROR if error else logging.INFO
    logger.log(level, _render(operation, context, skip=("operation",)), extra={"context": context})


# Webhook outcomes that deserve attention without being failures
_WEBHOOK_WARNING_RESULTS = frozenset({"duplicate", "skipped"})


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    rental_id: str | None = None,
    user_id: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log the handling of one processor webhook delivery.

    Level follows the result: ERROR for "error", WARNING for duplicates and
    skips, INFO for everything else.
    """
    context = _context(
        event_type=event_type,
        event_id=event_id,
        result=result,
        rental_id=rental_id,
        user_id=user_id,
        error=error,
        **extra,
    )
    if result == "error":
        level = logging.ERROR
    elif result in _WEBHOOK_WARNING_RESULTS:
        level = logging.WARNING
    else:
        level = logging.INFO
    headline = f"webhook {event_type} ({event_id})"
    logger.log(
        level,
        _render(headline, context, skip=("event_type", "event_id")),
        extra={"context": context},
    )
