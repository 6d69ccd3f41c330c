"""Fee calculator for rental money movements.

Pure arithmetic, no I/O. All amounts are integer cents:
- Rental fee: daily rate x rental days
- Platform fee: rental fee x 2%, rounded half-up
- Lender payout: rental fee - platform fee
- Late fee: per-day fee x whole days overdue
- Damage claim: clamped to [0, deposit]; the remainder of the deposit is refunded
"""

import datetime as dt
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import TypedDict

SECONDS_PER_DAY = 86400


class FeeBreakdown(TypedDict):
    """Result of a rental fee calculation."""

    rental_days: int
    daily_rate: int  # cents
    rental_fee: int  # cents
    platform_fee_rate: Decimal
    platform_fee: int  # cents
    lender_payout: int  # cents
    deposit_amount: int  # cents
    total_authorization: int  # rental fee + deposit, cents


class DamageSettlement(TypedDict):
    """Result of a damage claim calculation."""

    claim_amount: int  # cents kept from the deposit
    deposit_refund: int  # cents released to the borrower in total
    refund_due: int  # cents still to release on top of earlier refunds


def _as_utc(value: dt.datetime) -> dt.datetime:
    # Naive datetimes are treated as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value


class FeeCalculator:
    """Calculator for rental fees, payouts, late fees and damage claims."""

    PLATFORM_FEE_RATE = Decimal("0.02")

    def to_minor_units(self, major: Decimal | int | str) -> int:
        """Convert a major-unit price (dollars) to cents, rounding half-up.

        Args:
            major: Amount in major units, e.g. Decimal("20.00")

        Returns:
            Amount in cents
        """
        cents = (Decimal(str(major)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(cents)

    def rental_days(self, start: dt.datetime, end: dt.datetime) -> int:
        """Number of billable days between start and end.

        Partial days are billed as a whole day. The minimum is one day.

        Raises:
            ValueError: If end is not after start
        """
        span = (_as_utc(end) - _as_utc(start)).total_seconds()
        if span <= 0:
            raise ValueError("end must be after start")
        return max(1, math.ceil(span / SECONDS_PER_DAY))

    def platform_fee(self, rental_fee: int, rate: Decimal | None = None) -> int:
        """Platform share of the rental fee, rounded half-up to the cent."""
        rate = self.PLATFORM_FEE_RATE if rate is None else rate
        fee = (Decimal(rental_fee) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return int(fee)

    def calculate(
        self,
        daily_rate: int,
        rental_days: int,
        deposit_amount: int,
        rate: Decimal | None = None,
    ) -> FeeBreakdown:
        """Calculate the full fee breakdown for a rental.

        Args:
            daily_rate: Daily rate in cents
            rental_days: Billable days (>= 1)
            deposit_amount: Refundable deposit in cents
            rate: Platform fee rate override

        Returns:
            FeeBreakdown where platform_fee + lender_payout == rental_fee
        """
        if rental_days < 1:
            raise ValueError("rental_days must be at least 1")
        if daily_rate < 0 or deposit_amount < 0:
            raise ValueError("amounts must not be negative")

        rate = self.PLATFORM_FEE_RATE if rate is None else rate
        rental_fee = daily_rate * rental_days
        platform_fee = self.platform_fee(rental_fee, rate)

        return FeeBreakdown(
            rental_days=rental_days,
            daily_rate=daily_rate,
            rental_fee=rental_fee,
            platform_fee_rate=rate,
            platform_fee=platform_fee,
            lender_payout=rental_fee - platform_fee,
            deposit_amount=deposit_amount,
            total_authorization=rental_fee + deposit_amount,
        )

    def days_overdue(self, end: dt.datetime, now: dt.datetime) -> int:
        """Whole days past the end date, rounded up; zero when not overdue."""
        span = (_as_utc(now) - _as_utc(end)).total_seconds()
        if span <= 0:
            return 0
        return math.ceil(span / SECONDS_PER_DAY)

    def late_fee(self, late_fee_per_day: int, days_overdue: int) -> int:
        return late_fee_per_day * max(0, days_overdue)

    def clamp_damage_claim(self, requested: int, deposit_amount: int) -> int:
        return min(max(requested, 0), deposit_amount)

    def damage_settlement(
        self, requested: int, deposit_amount: int, already_refunded: int = 0
    ) -> DamageSettlement:
        """Split the deposit between a damage claim and a borrower refund.

        Deposit already released cannot be clawed back, so the claim is capped
        at what is still held as well as at the deposit.

        Args:
            requested: Claim amount asked for by the lender, in cents
            deposit_amount: Deposit held, in cents
            already_refunded: Deposit released by earlier refunds, in cents

        Returns:
            DamageSettlement with claim_amount + deposit_refund == deposit_amount
        """
        still_held = max(deposit_amount - already_refunded, 0)
        claim = min(self.clamp_damage_claim(requested, deposit_amount), still_held)
        deposit_refund = deposit_amount - claim
        return DamageSettlement(
            claim_amount=claim,
            deposit_refund=deposit_refund,
            refund_due=deposit_refund - already_refunded,
        )
