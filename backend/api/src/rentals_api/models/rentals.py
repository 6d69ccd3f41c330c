"""API models for rental endpoints.

Request bodies never carry the caller's identity; it comes from the bearer
token. Amounts are integer cents.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from rentals.models import ItemCondition, PaymentStatus, RentalStatus, RentalTransaction


# === Request Models ===


class RentalRequestBody(BaseModel):
    """Request to borrow a listing."""

    model_config = ConfigDict(
        # Note: strict=False allows string-to-datetime coercion from JSON
        strict=False,
        json_schema_extra={
            "examples": [
                {
                    "listing_id": "lst_123",
                    "start_date": "2025-07-15T09:00:00Z",
                    "end_date": "2025-07-18T09:00:00Z",
                    "message": "Need it for a weekend project",
                }
            ]
        },
    )

    listing_id: str = Field(..., min_length=1, description="Listing to borrow")
    start_date: datetime = Field(..., description="Requested pickup time (ISO 8601)")
    end_date: datetime = Field(..., description="Requested return time (ISO 8601)")
    message: str | None = Field(
        default=None,
        max_length=500,
        description="Note to the lender",
    )


class ApproveBody(BaseModel):
    """Optional lender response on approval."""

    response: str | None = Field(default=None, max_length=500)


class DeclineBody(BaseModel):
    """Optional lender reason on decline."""

    reason: str | None = Field(default=None, max_length=500)


class PickupBody(BaseModel):
    """Item condition recorded at handover."""

    model_config = ConfigDict(strict=False)

    condition: ItemCondition = Field(
        default=ItemCondition.GOOD,
        description="Condition at pickup",
        examples=["good"],
    )


class ReturnBody(BaseModel):
    """Item condition recorded at return."""

    model_config = ConfigDict(strict=False)

    condition: ItemCondition = Field(..., description="Condition at return", examples=["worn"])
    notes: str | None = Field(default=None, max_length=1000)


class DamageClaimBody(BaseModel):
    """Lender damage claim against the deposit.

    The amount is clamped to the deposit; a later claim replaces an earlier one.
    """

    model_config = ConfigDict(
        strict=False,
        json_schema_extra={
            "examples": [
                {
                    "amount_cents": 2500,
                    "notes": "Cracked housing on the left side",
                    "evidence_urls": ["https://example.com/photos/1.jpg"],
                }
            ]
        },
    )

    amount_cents: int = Field(..., strict=True, ge=0, description="Amount to keep, in cents")
    notes: str = Field(..., min_length=10, max_length=2000)
    evidence_urls: list[str] = Field(default_factory=list, max_length=10)


# === Response Models ===


class RentalView(BaseModel):
    """Rental transaction as returned to either party."""

    model_config = ConfigDict(from_attributes=True)

    rental_id: str
    borrower_id: str
    lender_id: str
    listing_id: str
    requested_start_date: datetime
    requested_end_date: datetime
    rental_days: int
    status: RentalStatus
    payment_status: PaymentStatus

    daily_rate: int
    rental_fee: int
    deposit_amount: int
    late_fee_per_day: int
    platform_fee_rate: Decimal
    platform_fee: int
    lender_payout: int
    authorization_amount: int

    damage_claim_amount: int | None = None
    damage_claim_notes: str | None = None
    damage_evidence_urls: list[str] = Field(default_factory=list)
    deposit_refunded: int = 0
    late_fee_amount: int = 0
    late_fee_paid: bool = False

    payment_intent_ref: str | None = None
    transfer_ref: str | None = None

    condition_at_pickup: ItemCondition | None = None
    condition_at_return: ItemCondition | None = None
    condition_notes: str | None = None
    condition_degraded: bool = False
    borrower_message: str | None = None
    lender_response: str | None = None

    created_at: datetime
    updated_at: datetime
    approved_at: datetime | None = None
    picked_up_at: datetime | None = None
    returned_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_rental(cls, rental: RentalTransaction) -> "RentalView":
        return cls.model_validate(rental, from_attributes=True)


class RentalResponse(BaseModel):
    """Standard wrapper for a single rental."""

    success: bool = True
    rental: RentalView


class PaymentConfirmationResponse(BaseModel):
    """Client credentials to finish an authorization, or its current status."""

    success: bool = True
    requires_payment: bool
    status: str | None = None
    payment_intent_id: str | None = None
    client_secret: str | None = None
    ephemeral_key: str | None = None
    customer_id: str | None = None


class LateFeeResponse(BaseModel):
    """Late fee charge awaiting borrower confirmation."""

    success: bool = True
    payment_intent_id: str
    client_secret: str
    ephemeral_key: str
    customer_id: str
    days_overdue: int
    late_fee_per_day: int
    late_fee_amount: int


class PaymentStatusResponse(BaseModel):
    """Payment summary for a rental."""

    success: bool = True
    rental_id: str
    status: RentalStatus
    payment_status: PaymentStatus
    rental_fee: int
    deposit_amount: int
    platform_fee: int
    lender_payout: int
    late_fee_per_day: int
    late_fee_charged: int
    late_fee_paid: bool
    damage_claim_amount: int
    damage_claim_notes: str | None = None
    damage_evidence_urls: list[str] = Field(default_factory=list)
    deposit_refunded: int
    is_overdue: bool
    days_overdue: int
    is_borrower: bool
    is_lender: bool
    processor_status: str | None = Field(
        default=None,
        description="Live processor status; omitted when the processor is unreachable",
    )
    amount_authorized: int | None = None
    amount_captured: int | None = None
