"""Pydantic models for rental transactions, listings, profiles and webhooks."""

from .enums import (
    GateStep,
    ItemCondition,
    PaymentStatus,
    RentalStatus,
    SubscriptionTier,
    VerificationStatus,
)
from .errors import (
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    AccessGateRequired,
    AuthenticationRequired,
    ConcurrentModification,
    ErrorCode,
    ErrorResponse,
    GatewayError,
    GatewayTimeout,
    NotFoundOrForbidden,
    PreconditionFailed,
    RentalError,
    SignatureInvalid,
    ValidationError,
    get_user_friendly_stripe_message,
    is_stripe_error_retryable,
)
from .listing import Listing
from .rental import RentalTransaction
from .user import AccessStatus, UserProfile
from .webhook_event import ProcessorWebhookEvent

__all__ = [
    # Enums
    "GateStep",
    "ItemCondition",
    "PaymentStatus",
    "RentalStatus",
    "SubscriptionTier",
    "VerificationStatus",
    # Entities
    "Listing",
    "RentalTransaction",
    "AccessStatus",
    "UserProfile",
    "ProcessorWebhookEvent",
    # Errors
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "AccessGateRequired",
    "AuthenticationRequired",
    "ConcurrentModification",
    "ErrorCode",
    "ErrorResponse",
    "GatewayError",
    "GatewayTimeout",
    "NotFoundOrForbidden",
    "PreconditionFailed",
    "RentalError",
    "SignatureInvalid",
    "ValidationError",
    "get_user_friendly_stripe_message",
    "is_stripe_error_retryable",
]
