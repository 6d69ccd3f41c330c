"""Rental transaction state machine.

Drives a rental from request to settlement:

    requested -> approved -> paid -> picked_up -> returned
        \\            \\        \\
         +------------+--------+--> cancelled

`payment_status` moves in parallel (pending -> authorized -> captured ->
completed | damage_claimed, or failed / cancelled).

Every transition follows the same shape: a role-scoped lookup (a missing
rental and a caller without the role are the same 404), then the per-rental
lock, a state check, the gateway call(s) with a stable idempotency key, and a
version-checked save. A gateway error leaves the stored rental untouched.
The `approved -> paid` step is not here: only the processor can assert it, so
the webhook reconciler applies it.
"""

import datetime as dt
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypedDict

from rentals.models import (
    ErrorCode,
    GatewayError,
    ItemCondition,
    PaymentStatus,
    PreconditionFailed,
    RentalStatus,
    RentalTransaction,
    ValidationError,
)
from rentals.utils.logging import get_logger, log_payment_operation

from .fee_calculator import FeeCalculator
from .payment_gateway import CLIENT_ACTION_STATUSES, PaymentGateway

if TYPE_CHECKING:
    from .listing_store import ListingStore
    from .rental_store import RentalStore
    from .user_store import UserStore

logger = get_logger(__name__)


class PaymentConfirmation(TypedDict, total=False):
    """What the borrower needs to finish (or check) a payment."""

    requires_payment: bool
    status: str
    payment_intent_id: str
    client_secret: str
    ephemeral_key: str
    customer_id: str


class LateFeeCharge(TypedDict):
    """A late fee charge awaiting borrower confirmation."""

    payment_intent_id: str
    client_secret: str
    ephemeral_key: str
    customer_id: str
    days_overdue: int
    late_fee_per_day: int
    late_fee_amount: int


class RentalEngine:
    """Executes user-initiated rental transitions."""

    MIN_RENTAL_DAYS = 1
    MAX_RENTAL_DAYS = 30
    MIN_DAMAGE_NOTES_LENGTH = 10
    CANCELLABLE_STATUSES = frozenset(
        {RentalStatus.REQUESTED, RentalStatus.APPROVED, RentalStatus.PAID}
    )

    def __init__(
        self,
        rentals: "RentalStore",
        listings: "ListingStore",
        users: "UserStore",
        gateway: PaymentGateway,
        calculator: FeeCalculator | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            rentals: Rental transaction store
            listings: Listing store
            users: Member profile store
            gateway: Payment processor adapter
            calculator: Fee calculator
            clock: Returns the current UTC time (injectable for tests)
        """
        self.rentals = rentals
        self.listings = listings
        self.users = users
        self.gateway = gateway
        self.calculator = calculator or FeeCalculator()
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    @staticmethod
    def _require_status(rental: RentalTransaction, *allowed: RentalStatus) -> None:
        # Wrong-state callers get the same answer as strangers
        if rental.status not in allowed:
            raise PreconditionFailed(details={"rental_id": rental.rental_id})

    def _borrower_customer_id(self, borrower_id: str) -> str:
        """Return the borrower's processor customer, creating it on first use."""
        profile = self.users.get_or_default(borrower_id)
        customer_id = self.gateway.create_customer_if_absent(
            borrower_id, profile.stripe_customer_id, profile.email
        )
        if customer_id != profile.stripe_customer_id:
            self.users.set_customer_id(borrower_id, customer_id)
        return customer_id

    # =========================================================================
    # Request / approve / decline / cancel
    # =========================================================================

    def request(
        self,
        borrower_id: str,
        listing_id: str,
        start: dt.datetime,
        end: dt.datetime,
        message: str | None = None,
    ) -> RentalTransaction:
        """Create a rental request.

        The listing is not reserved yet; other members may still request it
        until the lender approves one.

        Args:
            borrower_id: Member asking to borrow
            listing_id: Listing to borrow
            start: Requested start
            end: Requested end (must be after start)
            message: Optional note to the lender

        Returns:
            The new rental in requested/pending

        Raises:
            ValidationError: On a bad date range, duration, listing or amount
        """
        # Naive datetimes are treated as UTC
        start = start if start.tzinfo else start.replace(tzinfo=dt.UTC)
        end = end if end.tzinfo else end.replace(tzinfo=dt.UTC)
        if end <= start:
            raise ValidationError(
                ErrorCode.INVALID_DATE_RANGE,
                details={"start": start.isoformat(), "end": end.isoformat()},
            )

        listing = self.listings.get(listing_id)
        if listing is None or not listing.is_bookable:
            raise ValidationError(ErrorCode.LISTING_UNAVAILABLE, details={"listing_id": listing_id})
        if listing.owner_id == borrower_id:
            raise ValidationError(ErrorCode.SELF_RENTAL, details={"listing_id": listing_id})

        rental_days = self.calculator.rental_days(start, end)
        min_days = max(self.MIN_RENTAL_DAYS, listing.min_duration_days or self.MIN_RENTAL_DAYS)
        max_days = min(self.MAX_RENTAL_DAYS, listing.max_duration_days or self.MAX_RENTAL_DAYS)
        if not min_days <= rental_days <= max_days:
            raise ValidationError(
                ErrorCode.DURATION_OUT_OF_BOUNDS,
                details={"rental_days": rental_days, "min_days": min_days, "max_days": max_days},
            )

        # Listing prices are major units; convert once and store cents
        fees = self.calculator.calculate(
            daily_rate=self.calculator.to_minor_units(listing.price_per_day),
            rental_days=rental_days,
            deposit_amount=self.calculator.to_minor_units(listing.deposit_amount),
        )
        if fees["total_authorization"] < PaymentGateway.MIN_AMOUNT:
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                details={
                    "amount": fees["total_authorization"],
                    "minimum": PaymentGateway.MIN_AMOUNT,
                },
            )

        now = self._clock()
        rental = RentalTransaction(
            rental_id=str(uuid.uuid4()),
            borrower_id=borrower_id,
            lender_id=listing.owner_id,
            listing_id=listing_id,
            requested_start_date=start,
            requested_end_date=end,
            rental_days=fees["rental_days"],
            daily_rate=fees["daily_rate"],
            rental_fee=fees["rental_fee"],
            deposit_amount=fees["deposit_amount"],
            late_fee_per_day=self.calculator.to_minor_units(listing.late_fee_per_day),
            platform_fee_rate=fees["platform_fee_rate"],
            platform_fee=fees["platform_fee"],
            lender_payout=fees["lender_payout"],
            borrower_message=message,
            created_at=now,
            updated_at=now,
        )
        self.rentals.create(rental)

        log_payment_operation(
            logger,
            "request",
            rental_id=rental.rental_id,
            amount_cents=fees["total_authorization"],
            status=rental.status.value,
            listing_id=listing_id,
        )
        return rental

    def approve(
        self, lender_id: str, rental_id: str, response: str | None = None
    ) -> RentalTransaction:
        """Approve a request and place an authorization hold.

        The hold covers rental fee plus deposit with manual capture: funds are
        reserved on the borrower's card but not moved. The listing is reserved.

        Raises:
            NotFoundOrForbidden: If the caller is not the lender
            PreconditionFailed: If the rental is not requested
            ValidationError: If the listing was taken by another approval
            GatewayError: If the processor rejects the hold
        """
        self.rentals.get_for_lender(rental_id, lender_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, RentalStatus.REQUESTED)

            # Only one approval per listing may hold it
            if not self.listings.reserve(rental.listing_id):
                raise ValidationError(
                    ErrorCode.LISTING_UNAVAILABLE, details={"listing_id": rental.listing_id}
                )

            try:
                customer_id = self._borrower_customer_id(rental.borrower_id)
                hold = self.gateway.authorize(
                    rental.authorization_amount,
                    customer_id,
                    idempotency_key=f"authorize_{rental_id}",
                    metadata={"rental_id": rental_id, "type": "rental"},
                )

                saved = self.rentals.save(
                    rental.model_copy(
                        update={
                            "status": RentalStatus.APPROVED,
                            "payment_intent_ref": hold["payment_intent_id"],
                            "lender_response": response,
                            "approved_at": self._clock(),
                        }
                    )
                )
            except Exception:
                logger.warning("Approval of rental %s failed; re-opening listing", rental_id)
                self.listings.set_available(rental.listing_id, True)
                raise

        log_payment_operation(
            logger,
            "approve",
            rental_id=rental_id,
            payment_intent_id=saved.payment_intent_ref,
            amount_cents=saved.authorization_amount,
            status=saved.status.value,
            payment_status=saved.payment_status.value,
        )
        return saved

    def decline(
        self, lender_id: str, rental_id: str, reason: str | None = None
    ) -> RentalTransaction:
        """Decline a request; releases a hold if one exists.

        Raises:
            NotFoundOrForbidden: If the caller is not the lender
            PreconditionFailed: If the rental is not requested
        """
        self.rentals.get_for_lender(rental_id, lender_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, RentalStatus.REQUESTED)

            if rental.payment_intent_ref:
                logger.warning("Releasing unexpected hold on requested rental %s", rental_id)
                self.gateway.cancel(
                    rental.payment_intent_ref, idempotency_key=f"cancel_{rental_id}"
                )

            saved = self.rentals.save(
                rental.model_copy(
                    update={
                        "status": RentalStatus.CANCELLED,
                        "payment_status": PaymentStatus.CANCELLED,
                        "lender_response": reason,
                        "cancelled_at": self._clock(),
                    }
                )
            )

        log_payment_operation(logger, "decline", rental_id=rental_id, status=saved.status.value)
        return saved

    def cancel(self, borrower_id: str, rental_id: str) -> RentalTransaction:
        """Borrower withdraws before pickup.

        An uncaptured hold is released; a payment that was captured is
        refunded in full. A reserved listing is re-opened.

        Raises:
            NotFoundOrForbidden: If the caller is not the borrower
            PreconditionFailed: If the item was already picked up or the rental is closed
        """
        self.rentals.get_for_borrower(rental_id, borrower_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, *self.CANCELLABLE_STATUSES)

            if rental.payment_intent_ref:
                if rental.payment_status == PaymentStatus.CAPTURED:
                    self.gateway.refund(
                        rental.payment_intent_ref,
                        idempotency_key=f"cancel_refund_{rental_id}",
                        reason="borrower_cancelled",
                    )
                elif rental.payment_status not in (PaymentStatus.CANCELLED, PaymentStatus.FAILED):
                    self.gateway.cancel(
                        rental.payment_intent_ref, idempotency_key=f"cancel_{rental_id}"
                    )

            was_reserved = rental.status != RentalStatus.REQUESTED
            saved = self.rentals.save(
                rental.model_copy(
                    update={
                        "status": RentalStatus.CANCELLED,
                        "payment_status": PaymentStatus.CANCELLED,
                        "cancelled_at": self._clock(),
                    }
                )
            )

        if was_reserved:
            self.listings.set_available(saved.listing_id, True)
        log_payment_operation(logger, "cancel", rental_id=rental_id, status=saved.status.value)
        return saved

    # =========================================================================
    # Payment confirmation
    # =========================================================================

    def confirm_payment(self, borrower_id: str, rental_id: str) -> PaymentConfirmation:
        """Report what the borrower must do to complete the hold.

        Never changes state: the processor confirms the hold by webhook.

        Returns:
            PaymentConfirmation; when `requires_payment` is true it carries the
            client secret, an ephemeral key and the customer ID

        Raises:
            NotFoundOrForbidden: If the caller is not the borrower
            PreconditionFailed: If there is no hold to confirm
        """
        rental = self.rentals.get_for_borrower(rental_id, borrower_id)
        self._require_status(rental, RentalStatus.APPROVED, RentalStatus.PAID)
        if not rental.payment_intent_ref:
            raise PreconditionFailed(details={"rental_id": rental_id})

        intent = self.gateway.get_authorization(rental.payment_intent_ref)
        if intent["status"] not in CLIENT_ACTION_STATUSES:
            return PaymentConfirmation(
                requires_payment=False,
                status=intent["status"],
                payment_intent_id=intent["payment_intent_id"],
            )

        customer_id = intent.get("customer") or self._borrower_customer_id(borrower_id)
        return PaymentConfirmation(
            requires_payment=True,
            status=intent["status"],
            payment_intent_id=intent["payment_intent_id"],
            client_secret=intent["client_secret"],
            ephemeral_key=self.gateway.create_ephemeral_key(customer_id),
            customer_id=customer_id,
        )

    # =========================================================================
    # Pickup / return
    # =========================================================================

    def pickup(
        self, lender_id: str, rental_id: str, condition: ItemCondition
    ) -> RentalTransaction:
        """Hand the item over and capture the held funds in full.

        If a capture already went through (e.g. an earlier attempt timed out
        and the webhook reconciled it) the capture is not repeated.

        Raises:
            NotFoundOrForbidden: If the caller is not the lender
            PreconditionFailed: If the rental is not paid with an authorized hold
            GatewayError: If the capture fails; the rental stays paid
        """
        self.rentals.get_for_lender(rental_id, lender_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, RentalStatus.PAID)
            if (
                rental.payment_status not in (PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED)
                or not rental.payment_intent_ref
            ):
                raise PreconditionFailed(details={"rental_id": rental_id})

            if rental.payment_status == PaymentStatus.AUTHORIZED:
                self.gateway.capture(
                    rental.payment_intent_ref, idempotency_key=f"capture_{rental_id}"
                )

            saved = self.rentals.save(
                rental.model_copy(
                    update={
                        "status": RentalStatus.PICKED_UP,
                        "payment_status": PaymentStatus.CAPTURED,
                        "condition_at_pickup": condition,
                        "picked_up_at": self._clock(),
                    }
                )
            )

        log_payment_operation(
            logger,
            "pickup",
            rental_id=rental_id,
            payment_intent_id=saved.payment_intent_ref,
            amount_cents=saved.authorization_amount,
            status=saved.status.value,
            payment_status=saved.payment_status.value,
        )
        return saved

    def return_item(
        self,
        lender_id: str,
        rental_id: str,
        condition: ItemCondition,
        notes: str | None = None,
    ) -> RentalTransaction:
        """Record the return and settle.

        Clean return: the deposit is refunded and the lender payout is
        transferred; the rental ends returned/completed. Degraded return: the
        deposit stays captured (returned/captured) and the payout waits for the
        damage claim, which settles both. Either way the listing re-opens.

        Raises:
            NotFoundOrForbidden: If the caller is not the lender
            PreconditionFailed: If the item is not picked up
            GatewayError: If a refund or transfer fails; the rental stays picked_up
        """
        self.rentals.get_for_lender(rental_id, lender_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, RentalStatus.PICKED_UP)

            returned = rental.model_copy(
                update={"condition_at_return": condition, "condition_notes": notes}
            )
            degraded = returned.condition_degraded
            update: dict[str, Any] = {
                "status": RentalStatus.RETURNED,
                "returned_at": self._clock(),
            }

            if not degraded and rental.deposit_amount > 0:
                self.gateway.refund(
                    rental.payment_intent_ref,
                    rental.deposit_amount,
                    idempotency_key=f"deposit_refund_{rental_id}",
                    reason="deposit_release",
                )
                update["deposit_refunded"] = rental.deposit_amount

            if not degraded:
                update["transfer_ref"] = self._pay_out(
                    rental, rental.lender_payout, idempotency_key=f"payout_{rental_id}"
                )
            update["payment_status"] = (
                PaymentStatus.CAPTURED if degraded else PaymentStatus.COMPLETED
            )
            saved = self.rentals.save(returned.model_copy(update=update))

        self.listings.record_return(saved.listing_id, saved.lender_payout)
        log_payment_operation(
            logger,
            "return",
            rental_id=rental_id,
            status=saved.status.value,
            payment_status=saved.payment_status.value,
            condition_degraded=degraded,
            transfer_id=saved.transfer_ref,
        )
        return saved

    def _pay_out(
        self, rental: RentalTransaction, amount: int, *, idempotency_key: str
    ) -> str | None:
        """Transfer `amount` to the lender; returns the transfer ID, if one was made."""
        if rental.transfer_ref or amount <= 0:
            return rental.transfer_ref

        lender = self.users.get_or_default(rental.lender_id)
        if not lender.payout_account_linked:
            logger.warning(
                "Lender %s has no payout account; payout for rental %s not sent",
                rental.lender_id,
                rental.rental_id,
            )
            return None

        transfer = self.gateway.transfer(
            amount,
            lender.stripe_connect_account_id,
            idempotency_key=idempotency_key,
            metadata={"rental_id": rental.rental_id, "type": "payout"},
        )
        return transfer["transfer_id"]

    # =========================================================================
    # Damage claim / late fee
    # =========================================================================

    def damage_claim(
        self,
        lender_id: str,
        rental_id: str,
        amount: int,
        notes: str,
        evidence_urls: list[str] | None = None,
    ) -> RentalTransaction:
        """Settle a degraded return: keep part of the deposit, release the rest.

        The claim is clamped to [0, deposit] and replaces any earlier claim.
        The first settlement pays the lender their payout plus the claim; a
        later, lower claim refunds the borrower the difference and reverses
        the same amount from that transfer.

        Args:
            lender_id: Caller, must be the lender
            rental_id: Rental to claim against
            amount: Requested claim in cents
            notes: Description of the damage (at least 10 characters)
            evidence_urls: Optional photo URLs

        Returns:
            The rental in damage_claimed. `damage_claim_amount` is the amount
            actually kept: deposit already released cannot be taken back, so a
            claim higher than an earlier one stays at the deposit still held.

        Raises:
            ValidationError: If notes are too short or amount is not an integer
            NotFoundOrForbidden: If the caller is not the lender
            PreconditionFailed: If the rental is not returned
            GatewayError: If the refund, transfer or reversal fails; the rental is unchanged
        """
        if len((notes or "").strip()) < self.MIN_DAMAGE_NOTES_LENGTH:
            raise ValidationError(
                details={"notes": f"must be at least {self.MIN_DAMAGE_NOTES_LENGTH} characters"}
            )
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(ErrorCode.INVALID_AMOUNT, details={"amount": str(amount)})

        self.rentals.get_for_lender(rental_id, lender_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, RentalStatus.RETURNED)

            settlement = self.calculator.damage_settlement(
                amount, rental.deposit_amount, rental.deposit_refunded
            )
            claim = settlement["claim_amount"]
            refund_due = settlement["refund_due"]
            previous_claim = rental.damage_claim_amount

            if refund_due > 0:
                self.gateway.refund(
                    rental.payment_intent_ref,
                    refund_due,
                    idempotency_key=f"damage_refund_{rental_id}_{rental.deposit_refunded}",
                    reason="damage_claim_release",
                )

            # A lowered claim takes the difference back from the lender
            if rental.transfer_ref and previous_claim is not None and claim < previous_claim:
                self.gateway.reverse_transfer(
                    rental.transfer_ref,
                    previous_claim - claim,
                    idempotency_key=f"payout_reversal_{rental_id}_{previous_claim}",
                )

            transfer_ref = self._pay_out(
                rental,
                rental.lender_payout + claim,
                idempotency_key=f"damage_payout_{rental_id}_{claim}",
            )

            saved = self.rentals.save(
                rental.model_copy(
                    update={
                        "damage_claim_amount": claim,
                        "damage_claim_notes": notes.strip(),
                        "damage_evidence_urls": list(evidence_urls or []),
                        "deposit_refunded": settlement["deposit_refund"],
                        "transfer_ref": transfer_ref,
                        "payment_status": PaymentStatus.DAMAGE_CLAIMED,
                    }
                )
            )

        log_payment_operation(
            logger,
            "damage_claim",
            rental_id=rental_id,
            amount_cents=claim,
            payment_status=saved.payment_status.value,
            requested_cents=amount,
            refunded_cents=refund_due,
            transfer_id=saved.transfer_ref,
        )
        return saved

    def late_fee(self, lender_id: str, rental_id: str) -> LateFeeCharge:
        """Create a separate charge for days past the end date.

        The charge is not drawn from the original hold; it is a new
        automatically captured payment the borrower confirms client-side.

        Raises:
            NotFoundOrForbidden: If the caller is not the lender
            PreconditionFailed: If the item is not out (404) or not overdue (NOT_OVERDUE)
            ValidationError: If the listing has no late fee or the fee is too small
        """
        self.rentals.get_for_lender(rental_id, lender_id)
        with self.rentals.locked(rental_id) as rental:
            self._require_status(rental, RentalStatus.PICKED_UP)

            days_overdue = self.calculator.days_overdue(rental.requested_end_date, self._clock())
            if days_overdue == 0:
                raise PreconditionFailed(
                    ErrorCode.NOT_OVERDUE,
                    details={"end_date": rental.requested_end_date.isoformat()},
                )
            if rental.late_fee_per_day <= 0:
                raise ValidationError(ErrorCode.NO_LATE_FEE_CONFIGURED)

            amount = self.calculator.late_fee(rental.late_fee_per_day, days_overdue)
            self.gateway.validate_charge_amount(amount)

            customer_id = self._borrower_customer_id(rental.borrower_id)
            charge = self.gateway.authorize(
                amount,
                customer_id,
                idempotency_key=f"late_fee_{rental_id}_{days_overdue}",
                metadata={
                    "rental_id": rental_id,
                    "type": "late_fee",
                    "days_overdue": str(days_overdue),
                },
                capture_method="automatic",
            )
            ephemeral_key = self.gateway.create_ephemeral_key(customer_id)

            self.rentals.save(
                rental.model_copy(
                    update={
                        "late_fee_payment_intent_ref": charge["payment_intent_id"],
                        "late_fee_amount": amount,
                        "late_fee_paid": False,
                    }
                )
            )

        log_payment_operation(
            logger,
            "late_fee",
            rental_id=rental_id,
            payment_intent_id=charge["payment_intent_id"],
            amount_cents=amount,
            days_overdue=days_overdue,
        )
        return LateFeeCharge(
            payment_intent_id=charge["payment_intent_id"],
            client_secret=charge["client_secret"],
            ephemeral_key=ephemeral_key,
            customer_id=customer_id,
            days_overdue=days_overdue,
            late_fee_per_day=rental.late_fee_per_day,
            late_fee_amount=amount,
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    def payment_status(self, user_id: str, rental_id: str) -> dict[str, Any]:
        """Payment summary for either party, with the live processor status.

        The live lookup is best effort; a processor error only omits those fields.

        Raises:
            NotFoundOrForbidden: If the caller is neither borrower nor lender
        """
        rental = self.rentals.get_for_party(rental_id, user_id)
        days_overdue = (
            self.calculator.days_overdue(rental.requested_end_date, self._clock())
            if rental.status == RentalStatus.PICKED_UP
            else 0
        )

        report: dict[str, Any] = {
            "rental_id": rental.rental_id,
            "status": rental.status.value,
            "payment_status": rental.payment_status.value,
            "rental_fee": rental.rental_fee,
            "deposit_amount": rental.deposit_amount,
            "platform_fee": rental.platform_fee,
            "lender_payout": rental.lender_payout,
            "late_fee_per_day": rental.late_fee_per_day,
            "late_fee_charged": rental.late_fee_amount,
            "late_fee_paid": rental.late_fee_paid,
            "damage_claim_amount": rental.damage_claim_amount or 0,
            "damage_claim_notes": rental.damage_claim_notes,
            "damage_evidence_urls": rental.damage_evidence_urls,
            "deposit_refunded": rental.deposit_refunded,
            "is_overdue": days_overdue > 0,
            "days_overdue": days_overdue,
            "is_borrower": rental.borrower_id == user_id,
            "is_lender": rental.lender_id == user_id,
        }

        if rental.payment_intent_ref:
            try:
                intent = self.gateway.get_authorization(rental.payment_intent_ref)
                report["processor_status"] = intent["status"]
                report["amount_authorized"] = intent["amount"]
                report["amount_captured"] = intent["amount_received"] or 0
            except GatewayError as e:
                logger.warning(
                    "Could not fetch processor status for rental %s: %s", rental_id, e.message
                )

        return report
