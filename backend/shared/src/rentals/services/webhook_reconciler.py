"""Webhook reconciler for processor events.

Applies facts only the processor can assert (a hold became capturable, a
charge failed or was cancelled, a subscription was paid, an identity check
passed) to rentals and member profiles.

Flow for each delivery:
1. Verify the signature over the raw body (bounded timestamp tolerance)
2. Claim the event ID in the dedup ledger (atomic insert-if-absent)
3. Dispatch by event type; rental effects run under the rental lock
4. Record the outcome, or drop the claim and re-raise so the sender retries

Unknown event types are acknowledged without effect.
"""

import datetime as dt
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, NamedTuple, TypedDict

from rentals.models import (
    ErrorCode,
    PaymentStatus,
    RentalStatus,
    RentalTransaction,
    SubscriptionTier,
    UserProfile,
    ValidationError,
    VerificationStatus,
)
from rentals.utils.logging import get_logger, log_webhook_event

if TYPE_CHECKING:
    from .event_ledger import EventLedger
    from .listing_store import ListingStore
    from .payment_gateway import PaymentGateway
    from .rental_store import RentalStore
    from .user_store import UserStore

logger = get_logger(__name__)

INTENT_RENTAL = "rental"
INTENT_LATE_FEE = "late_fee"


class Outcome(NamedTuple):
    """Result of applying one event."""

    result: str  # success or skipped
    message: str | None = None
    rental_id: str | None = None
    user_id: str | None = None


class WebhookResult(TypedDict):
    """Acknowledgement returned to the route."""

    event_id: str
    event_type: str
    processing_result: str  # success, skipped, duplicate, ignored
    message: str | None


class WebhookReconciler:
    """Verifies, deduplicates and applies processor webhook events."""

    def __init__(
        self,
        gateway: "PaymentGateway",
        ledger: "EventLedger",
        rentals: "RentalStore",
        listings: "ListingStore",
        users: "UserStore",
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.rentals = rentals
        self.listings = listings
        self.users = users
        self._handlers: dict[str, Callable[[dict[str, Any]], Outcome]] = {
            "payment_intent.amount_capturable_updated": self._on_authorization_held,
            "payment_intent.succeeded": self._on_payment_succeeded,
            "payment_intent.payment_failed": self._on_payment_failed,
            "payment_intent.canceled": self._on_payment_canceled,
            "charge.refunded": self._on_charge_refunded,
            "invoice.paid": self._on_invoice_paid,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "identity.verification_session.verified": self._on_identity_verified,
            "identity.verification_session.requires_input": self._on_identity_requires_input,
            "account.updated": self._on_account_updated,
        }

    @property
    def handled_event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Process one webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature: Stripe-Signature header value

        Returns:
            WebhookResult describing what happened

        Raises:
            SignatureInvalid: If the signature is missing or does not verify
            ValidationError: If the payload is malformed
            RentalError: If an effect failed; the ledger claim is dropped first
        """
        event = self.gateway.verify_webhook_signature(payload, signature)
        event_id = event.get("id")
        event_type = event.get("type")
        data_object = (event.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(data_object, dict):
            raise ValidationError(ErrorCode.MALFORMED_WEBHOOK)

        handler = self._handlers.get(event_type)
        if handler is None:
            log_webhook_event(logger, event_type, event_id, result="skipped")
            return WebhookResult(
                event_id=event_id,
                event_type=event_type,
                processing_result="ignored",
                message=f"Event type {event_type} not handled",
            )

        payload_hash = self.gateway.compute_payload_hash(payload)
        if not self.ledger.claim(event_id, event_type, payload_hash):
            log_webhook_event(logger, event_type, event_id, result="duplicate")
            return WebhookResult(
                event_id=event_id,
                event_type=event_type,
                processing_result="duplicate",
                message="Event already processed",
            )

        try:
            outcome = handler(data_object)
        except Exception as e:
            self.ledger.release(event_id)
            log_webhook_event(logger, event_type, event_id, result="error", error=str(e))
            raise

        self.ledger.complete(
            event_id,
            outcome.result,
            rental_id=outcome.rental_id,
            user_id=outcome.user_id,
            error_message=outcome.message if outcome.result == "skipped" else None,
        )
        log_webhook_event(
            logger,
            event_type,
            event_id,
            rental_id=outcome.rental_id,
            user_id=outcome.user_id,
            result=outcome.result,
        )
        return WebhookResult(
            event_id=event_id,
            event_type=event_type,
            processing_result=outcome.result,
            message=outcome.message,
        )

    # =========================================================================
    # Rental events
    # =========================================================================

    @staticmethod
    def _intent_kind(rental: RentalTransaction, intent_id: str | None) -> str | None:
        if intent_id and intent_id == rental.payment_intent_ref:
            return INTENT_RENTAL
        if intent_id and intent_id == rental.late_fee_payment_intent_ref:
            return INTENT_LATE_FEE
        return None

    def _apply_to_rental(
        self,
        intent: dict[str, Any],
        apply: Callable[[RentalTransaction, str], tuple[dict[str, Any] | None, str]],
    ) -> Outcome:
        """Run an effect against the rental an intent belongs to.

        `apply` receives the locked rental and the intent kind, and returns
        the field updates (None for no change) and a message.
        """
        rental_id = (intent.get("metadata") or {}).get("rental_id")
        if not rental_id:
            return Outcome("skipped", "Missing rental_id in metadata")
        if self.rentals.get(rental_id) is None:
            return Outcome("skipped", f"Rental {rental_id} not found", rental_id=rental_id)

        with self.rentals.locked(rental_id) as rental:
            kind = self._intent_kind(rental, intent.get("id"))
            if kind is None:
                logger.warning(
                    "Payment intent %s does not belong to rental %s", intent.get("id"), rental_id
                )
                return Outcome("skipped", "Payment intent does not match rental", rental_id)

            update, message = apply(rental, kind)
            if update:
                self.rentals.save(rental.model_copy(update=update))
        return Outcome("success", message, rental_id)

    def _on_authorization_held(self, intent: dict[str, Any]) -> Outcome:
        def apply(rental: RentalTransaction, kind: str) -> tuple[dict[str, Any] | None, str]:
            if kind != INTENT_RENTAL:
                return None, "Late fee charges are not held"
            if rental.status.is_terminal:
                logger.warning("Hold placed on closed rental %s", rental.rental_id)
                return None, f"Rental already {rental.status.value}"

            update: dict[str, Any] = {}
            if rental.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                update["payment_status"] = PaymentStatus.AUTHORIZED
            if rental.status in (RentalStatus.REQUESTED, RentalStatus.APPROVED):
                update["status"] = RentalStatus.PAID
            return update or None, "Authorization held"

        return self._apply_to_rental(intent, apply)

    def _on_payment_succeeded(self, intent: dict[str, Any]) -> Outcome:
        def apply(rental: RentalTransaction, kind: str) -> tuple[dict[str, Any] | None, str]:
            if kind == INTENT_LATE_FEE:
                return {"late_fee_paid": True}, "Late fee paid"
            # A capture whose response was lost: record it so pickup does not repeat it
            if rental.payment_status == PaymentStatus.AUTHORIZED:
                return {"payment_status": PaymentStatus.CAPTURED}, "Capture reconciled"
            return None, "Capture already recorded"

        return self._apply_to_rental(intent, apply)

    def _on_payment_failed(self, intent: dict[str, Any]) -> Outcome:
        def apply(rental: RentalTransaction, kind: str) -> tuple[dict[str, Any] | None, str]:
            if kind == INTENT_LATE_FEE:
                return {"late_fee_paid": False}, "Late fee payment failed"
            if rental.status.is_terminal or rental.payment_status in (
                PaymentStatus.CAPTURED,
                PaymentStatus.COMPLETED,
                PaymentStatus.DAMAGE_CLAIMED,
            ):
                return None, "Failure after settlement ignored"
            # Fulfillment is left alone so the borrower can retry with another card
            return {"payment_status": PaymentStatus.FAILED}, "Payment failed"

        return self._apply_to_rental(intent, apply)

    def _on_payment_canceled(self, intent: dict[str, Any]) -> Outcome:
        reopen: list[str] = []

        def apply(rental: RentalTransaction, kind: str) -> tuple[dict[str, Any] | None, str]:
            if kind == INTENT_LATE_FEE:
                return {"late_fee_paid": False}, "Late fee charge canceled"
            if rental.status == RentalStatus.CANCELLED:
                return None, "Rental already cancelled"
            if rental.status not in (
                RentalStatus.REQUESTED,
                RentalStatus.APPROVED,
                RentalStatus.PAID,
            ):
                return None, f"Cancel ignored for {rental.status.value} rental"
            if rental.status != RentalStatus.REQUESTED:
                reopen.append(rental.listing_id)
            return {
                "status": RentalStatus.CANCELLED,
                "payment_status": PaymentStatus.CANCELLED,
            }, "Rental cancelled by processor"

        outcome = self._apply_to_rental(intent, apply)
        for listing_id in reopen:
            self.listings.set_available(listing_id, True)
        return outcome

    def _on_charge_refunded(self, charge: dict[str, Any]) -> Outcome:
        # Refunds are initiated here, so the event is only an audit record
        rental_id = (charge.get("metadata") or {}).get("rental_id")
        logger.info(
            "Refund recorded for payment intent %s: %s cents refunded",
            charge.get("payment_intent"),
            charge.get("amount_refunded"),
        )
        return Outcome("success", "Refund recorded", rental_id=rental_id)

    # =========================================================================
    # Access gate events
    # =========================================================================

    def _profile_for_session(self, session: dict[str, Any]) -> UserProfile | None:
        metadata = session.get("metadata") or {}
        if metadata.get("customer_id"):
            return self.users.find_by_customer_id(metadata["customer_id"])
        if metadata.get("user_id"):
            return self.users.get(metadata["user_id"])
        return None

    def _on_invoice_paid(self, invoice: dict[str, Any]) -> Outcome:
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            return Outcome("skipped", "Invoice is not for a subscription")
        profile = self.users.find_by_subscription_id(subscription_id)
        if profile is None:
            return Outcome("skipped", f"Unknown subscription {subscription_id}")

        self.users.activate_subscription(profile.user_id, SubscriptionTier.PLUS)
        return Outcome("success", "Subscription activated", user_id=profile.user_id)

    def _on_subscription_updated(self, subscription: dict[str, Any]) -> Outcome:
        profile = self.users.find_by_subscription_id(subscription.get("id", ""))
        if profile is None:
            return Outcome("skipped", "Unknown subscription")

        period_end = subscription.get("current_period_end")
        if subscription.get("cancel_at_period_end") and period_end:
            expires_at = dt.datetime.fromtimestamp(int(period_end), tz=dt.UTC)
            self.users.set_subscription_expiry(profile.user_id, expires_at)
            return Outcome("success", "Subscription ends at period end", user_id=profile.user_id)

        self.users.set_subscription_expiry(profile.user_id, None)
        return Outcome("success", "Subscription renewing", user_id=profile.user_id)

    def _on_subscription_deleted(self, subscription: dict[str, Any]) -> Outcome:
        profile = self.users.find_by_subscription_id(subscription.get("id", ""))
        if profile is None:
            return Outcome("skipped", "Unknown subscription")
        self.users.deactivate_subscription(profile.user_id)
        return Outcome("success", "Subscription cancelled", user_id=profile.user_id)

    def _on_identity_verified(self, session: dict[str, Any]) -> Outcome:
        profile = self._profile_for_session(session)
        if profile is None:
            return Outcome("skipped", "No member for verification session")
        self.users.set_verification(profile.user_id, VerificationStatus.VERIFIED)
        return Outcome("success", "Identity verified", user_id=profile.user_id)

    def _on_identity_requires_input(self, session: dict[str, Any]) -> Outcome:
        profile = self._profile_for_session(session)
        if profile is None:
            return Outcome("skipped", "No member for verification session")
        if profile.is_verified:
            return Outcome("success", "Already verified", user_id=profile.user_id)
        self.users.set_verification(profile.user_id, VerificationStatus.REQUIRES_INPUT)
        return Outcome("success", "Verification requires input", user_id=profile.user_id)

    def _on_account_updated(self, account: dict[str, Any]) -> Outcome:
        profile = self.users.find_by_connect_account_id(account.get("id", ""))
        if profile is None:
            return Outcome("skipped", "Unknown payout account")
        enabled = bool(account.get("charges_enabled")) and bool(account.get("payouts_enabled"))
        self.users.set_payouts_enabled(profile.user_id, enabled)
        return Outcome(
            "success",
            "Payout account linked" if enabled else "Payout account not ready",
            user_id=profile.user_id,
        )
