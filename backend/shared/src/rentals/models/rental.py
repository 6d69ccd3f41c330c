"""Rental transaction model.

All money fields are integer minor units (cents). Decimal major-unit prices
from listings are converted once, when the rental is requested.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import ItemCondition, PaymentStatus, RentalStatus


class RentalTransaction(BaseModel):
    """A request to borrow a listing, and its payment and fulfillment progress.

    `status` (fulfillment) and `payment_status` move independently: payment can
    be authorized while fulfillment is still approved.
    """

    model_config = ConfigDict(strict=True)

    rental_id: str = Field(..., description="Unique rental ID")
    borrower_id: str = Field(..., description="Member borrowing the item")
    lender_id: str = Field(..., description="Member lending the item")
    listing_id: str = Field(..., description="Listing being borrowed")

    requested_start_date: datetime
    requested_end_date: datetime
    rental_days: int = Field(..., ge=1)

    daily_rate: int = Field(..., ge=0, description="Daily rate in cents")
    rental_fee: int = Field(..., ge=0, description="daily_rate x rental_days")
    deposit_amount: int = Field(..., ge=0, description="Refundable deposit in cents")
    late_fee_per_day: int = Field(default=0, ge=0)
    platform_fee_rate: Decimal = Field(..., ge=0, le=1)
    platform_fee: int = Field(..., ge=0)
    lender_payout: int = Field(..., ge=0)

    damage_claim_amount: int | None = Field(default=None, ge=0)
    damage_claim_notes: str | None = None
    damage_evidence_urls: list[str] = Field(default_factory=list)
    deposit_refunded: int = Field(default=0, ge=0, description="Deposit released so far")
    late_fee_amount: int = Field(default=0, ge=0)
    late_fee_paid: bool = False

    status: RentalStatus = RentalStatus.REQUESTED
    payment_status: PaymentStatus = PaymentStatus.PENDING

    payment_intent_ref: str | None = Field(
        default=None,
        description="Processor authorization handle (pi_xxx)",
        examples=["pi_3ABC123DEF456"],
    )
    transfer_ref: str | None = Field(
        default=None,
        description="Processor payout handle (tr_xxx)",
        examples=["tr_1ABC123DEF456"],
    )
    late_fee_payment_intent_ref: str | None = None

    condition_at_pickup: ItemCondition | None = None
    condition_at_return: ItemCondition | None = None
    condition_notes: str | None = None
    borrower_message: str | None = None
    lender_response: str | None = None

    created_at: datetime
    updated_at: datetime
    approved_at: datetime | None = None
    picked_up_at: datetime | None = None
    returned_at: datetime | None = None
    cancelled_at: datetime | None = None

    version: int = Field(default=1, ge=1, description="Optimistic concurrency version")

    @model_validator(mode="after")
    def _check_invariants(self) -> "RentalTransaction":
        if self.requested_end_date <= self.requested_start_date:
            raise ValueError("requested_end_date must be after requested_start_date")
        if self.borrower_id == self.lender_id:
            raise ValueError("borrower and lender must differ")
        if self.damage_claim_amount is not None and self.damage_claim_amount > self.deposit_amount:
            raise ValueError("damage_claim_amount cannot exceed deposit_amount")
        if self.platform_fee + self.lender_payout != self.rental_fee:
            raise ValueError("platform_fee + lender_payout must equal rental_fee")
        return self

    @property
    def authorization_amount(self) -> int:
        """Amount held at approval: rental fee plus deposit."""
        return self.rental_fee + self.deposit_amount

    @property
    def condition_degraded(self) -> bool:
        if self.condition_at_pickup is None or self.condition_at_return is None:
            return False
        return self.condition_at_return.is_worse_than(self.condition_at_pickup)
