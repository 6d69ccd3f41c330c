"""Listing model, as far as the rental engine needs it."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class Listing(BaseModel):
    """An item offered for borrowing.

    Prices are stored in major units (dollars) as Decimal, the way listings are
    edited; rentals convert them to cents once at request time.
    """

    model_config = ConfigDict(strict=True)

    listing_id: str
    owner_id: str
    title: str = ""
    status: str = Field(default="active", description="active, paused or deleted")
    is_available: bool = True
    price_per_day: Decimal = Field(default=Decimal("0"), ge=0)
    deposit_amount: Decimal = Field(default=Decimal("0"), ge=0)
    late_fee_per_day: Decimal = Field(default=Decimal("0"), ge=0)
    min_duration_days: int | None = Field(default=None, ge=1)
    max_duration_days: int | None = Field(default=None, ge=1)
    times_borrowed: int = Field(default=0, ge=0)
    total_earnings: int = Field(default=0, ge=0, description="Lifetime payouts in cents")

    @property
    def is_bookable(self) -> bool:
        return self.status == "active" and self.is_available
