"""Standard error codes and exceptions for the rental engine.

Every failure a transition, the payment gateway or the webhook reconciler can
raise is a RentalError subclass carrying an ErrorCode. The API layer maps the
code to an HTTP status; the message and recovery hint come from the tables below.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Standard error codes."""

    # Input validation (ERR_VAL_*)
    INVALID_INPUT = "ERR_VAL_001"
    INVALID_DATE_RANGE = "ERR_VAL_002"
    DURATION_OUT_OF_BOUNDS = "ERR_VAL_003"
    SELF_RENTAL = "ERR_VAL_004"
    LISTING_UNAVAILABLE = "ERR_VAL_005"
    INVALID_AMOUNT = "ERR_VAL_006"
    NO_LATE_FEE_CONFIGURED = "ERR_VAL_007"

    # Lookup / state (ERR_RENTAL_*)
    RENTAL_NOT_FOUND = "ERR_RENTAL_001"
    NOT_OVERDUE = "ERR_RENTAL_002"
    CONCURRENT_MODIFICATION = "ERR_RENTAL_003"

    # Caller identity and access gate (ERR_AUTH_*)
    AUTH_REQUIRED = "ERR_AUTH_001"
    ACCESS_GATE_REQUIRED = "ERR_AUTH_002"

    # Payment processor (ERR_STRIPE_*)
    INVALID_WEBHOOK_SIGNATURE = "ERR_STRIPE_001"
    STRIPE_API_ERROR = "ERR_STRIPE_002"
    STRIPE_TIMEOUT = "ERR_STRIPE_003"
    MALFORMED_WEBHOOK = "ERR_STRIPE_004"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.INVALID_INPUT: "The request is invalid",
    ErrorCode.INVALID_DATE_RANGE: "End date must be after start date",
    ErrorCode.DURATION_OUT_OF_BOUNDS: "Rental duration is outside the allowed range",
    ErrorCode.SELF_RENTAL: "You cannot borrow your own item",
    ErrorCode.LISTING_UNAVAILABLE: "Listing not found or not available",
    ErrorCode.INVALID_AMOUNT: "Amount is not valid for payment processing",
    ErrorCode.NO_LATE_FEE_CONFIGURED: "No late fee is configured for this listing",
    ErrorCode.RENTAL_NOT_FOUND: "Rental not found",
    ErrorCode.NOT_OVERDUE: "Rental is not overdue",
    ErrorCode.CONCURRENT_MODIFICATION: "Rental is being updated by another request",
    ErrorCode.AUTH_REQUIRED: "Authentication required to perform this action",
    ErrorCode.ACCESS_GATE_REQUIRED: "Account setup is incomplete for this action",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Invalid webhook signature",
    ErrorCode.STRIPE_API_ERROR: "Payment processor error occurred",
    ErrorCode.STRIPE_TIMEOUT: "Payment processor did not respond in time",
    ErrorCode.MALFORMED_WEBHOOK: "Webhook payload could not be parsed",
}

# Recovery suggestions for clients
ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.INVALID_INPUT: "Correct the request and try again",
    ErrorCode.INVALID_DATE_RANGE: "Choose an end date after the start date",
    ErrorCode.DURATION_OUT_OF_BOUNDS: "Choose a duration within the listing limits",
    ErrorCode.SELF_RENTAL: "Pick a listing owned by another member",
    ErrorCode.LISTING_UNAVAILABLE: "Browse for another available listing",
    ErrorCode.INVALID_AMOUNT: "Check the amount against the processing limits",
    ErrorCode.NO_LATE_FEE_CONFIGURED: "Set a late fee on the listing first",
    ErrorCode.RENTAL_NOT_FOUND: "Verify the rental ID and its current status",
    ErrorCode.NOT_OVERDUE: "Late fees can be charged once the end date has passed",
    ErrorCode.CONCURRENT_MODIFICATION: "Retry the request shortly",
    ErrorCode.AUTH_REQUIRED: "Sign in and retry with a valid bearer token",
    ErrorCode.ACCESS_GATE_REQUIRED: "Complete the step named in next_step",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Verify webhook secret configuration",
    ErrorCode.STRIPE_API_ERROR: "Try again or contact support",
    ErrorCode.STRIPE_TIMEOUT: "Retry the same request; it is safe to repeat",
    ErrorCode.MALFORMED_WEBHOOK: "Check the webhook sender configuration",
}


class ErrorResponse(BaseModel):
    """Standard error body returned by the API."""

    model_config = ConfigDict(strict=True)

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, Any]] = None

    @classmethod
    def from_code(
        cls,
        code: ErrorCode,
        details: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from an error code.

        Args:
            code: The error code
            details: Optional additional context about the error
            message: Overrides the default message for the code

        Returns:
            An ErrorResponse with the message and recovery hint for the code.
        """
        return cls(
            error_code=code,
            message=message or ERROR_MESSAGES[code],
            recovery=ERROR_RECOVERY[code],
            details=details,
        )


class RentalError(Exception):
    """Base exception for rental engine failures."""

    default_code: ErrorCode = ErrorCode.INVALID_INPUT

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
    ):
        self.code = code or self.default_code
        self.message = message or ERROR_MESSAGES[self.code]
        self.recovery = ERROR_RECOVERY[self.code]
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Convert this exception to an ErrorResponse."""
        return ErrorResponse.from_code(self.code, self.details, self.message)


class ValidationError(RentalError):
    """Bad input shape or range. Never reaches the processor."""

    default_code = ErrorCode.INVALID_INPUT


class NotFoundOrForbidden(RentalError):
    """Missing rental, or the caller lacks the required role on it."""

    default_code = ErrorCode.RENTAL_NOT_FOUND


class PreconditionFailed(RentalError):
    """The rental exists but is in the wrong state for the transition.

    Role-scoped transitions raise it with RENTAL_NOT_FOUND so the state is not
    leaked; stateless checks use their own code (e.g. NOT_OVERDUE).
    """

    default_code = ErrorCode.RENTAL_NOT_FOUND


class ConcurrentModification(RentalError):
    """Another writer holds the rental lock or changed its version."""

    default_code = ErrorCode.CONCURRENT_MODIFICATION


class AuthenticationRequired(RentalError):
    """Missing, invalid or expired bearer credential."""

    default_code = ErrorCode.AUTH_REQUIRED


class AccessGateRequired(RentalError):
    """The caller has not completed the access gate step an action needs."""

    default_code = ErrorCode.ACCESS_GATE_REQUIRED


class GatewayError(RentalError):
    """The payment processor rejected or failed the call."""

    default_code = ErrorCode.STRIPE_API_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        stripe_error_code: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ):
        details = {"stripe_error_code": stripe_error_code} if stripe_error_code else None
        super().__init__(code=code, details=details, message=message)
        self.stripe_error_code = stripe_error_code

    @property
    def retryable(self) -> bool:
        return is_stripe_error_retryable(self.stripe_error_code)


class GatewayTimeout(GatewayError):
    """The processor call timed out; its outcome is unknown.

    The external effect may have happened. State is left untouched and the
    webhook path reconciles it; retrying with the same idempotency key is safe.
    """

    default_code = ErrorCode.STRIPE_TIMEOUT


class SignatureInvalid(RentalError):
    """Webhook authentication failed."""

    default_code = ErrorCode.INVALID_WEBHOOK_SIGNATURE


# Stripe error code to user-friendly message mapping
STRIPE_ERROR_MESSAGES: dict[str, str] = {
    # Card errors - user can fix
    "card_declined": "Your card was declined. Please try a different card.",
    "expired_card": "Your card has expired. Please use a different card.",
    "insufficient_funds": "Your card has insufficient funds. Please try a different card.",
    "incorrect_cvc": "The security code (CVC) is incorrect. Please check and try again.",
    "authentication_required": "Your bank requires additional authentication for this payment.",
    "amount_too_small": "The amount is below the minimum the processor accepts.",
    "amount_too_large": "The amount exceeds the maximum the processor accepts.",
    "payment_intent_unexpected_state": "The payment is no longer in a state that allows this action.",
    "charge_already_refunded": "This payment has already been refunded.",
    "balance_insufficient": "Platform balance is insufficient for this payout. It will be retried.",
    # Processing errors - may be retryable
    "processing_error": "A processing error occurred. Please try again.",
    "rate_limit": "Too many requests. Please wait a moment and try again.",
    "generic_decline": "Your card was declined. Please try a different card.",
}

# Stripe error codes that indicate the caller should retry
STRIPE_RETRYABLE_ERRORS: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "api_connection_error",
}


def get_user_friendly_stripe_message(
    stripe_error_code: Optional[str],
    default_message: str = "Payment could not be processed. Please try again.",
) -> str:
    """Get a user-friendly message for a Stripe error code.

    Args:
        stripe_error_code: The Stripe error code (e.g., 'card_declined').
        default_message: Message to use if error code is unknown.

    Returns:
        User-friendly error message.
    """
    if stripe_error_code and stripe_error_code in STRIPE_ERROR_MESSAGES:
        return STRIPE_ERROR_MESSAGES[stripe_error_code]
    return default_message


def is_stripe_error_retryable(stripe_error_code: Optional[str]) -> bool:
    """Check if a Stripe error is likely transient and retryable."""
    return stripe_error_code in STRIPE_RETRYABLE_ERRORS if stripe_error_code else False
