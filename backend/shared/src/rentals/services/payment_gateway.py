"""Payment gateway adapter over the Stripe API.

Provides integration with Stripe using the v8+ StripeClient pattern.
Retrieves API keys from SSM Parameter Store.

The adapter is deliberately narrow: authorize, capture, cancel, refund,
transfer, customer bootstrap and webhook verification. It validates amounts
before any network call and never retries; callers pass an idempotency key
per logical operation and may repeat a call with the same key.
"""

import hashlib
import json
import logging
import os
from functools import lru_cache
from typing import Any, NoReturn

import stripe
from stripe import StripeClient

from rentals.models.errors import (
    ErrorCode,
    GatewayError,
    GatewayTimeout,
    SignatureInvalid,
    ValidationError,
    get_user_friendly_stripe_message,
)

from .ssm_service import SSMServiceError, get_ssm_service, parameter_path

logger = logging.getLogger(__name__)

# Payment intent statuses that need the borrower to act before funds are held
CLIENT_ACTION_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action"}
)


class PaymentGateway:
    """Adapter for Stripe payment operations.

    Handles:
    - Authorization holds (manual capture) and separate charges
    - Capture, cancel and partial/full refunds
    - Transfers to a lender's connected account
    - Customer bootstrap and ephemeral keys for client-side confirmation
    - Webhook signature validation

    Usage:
        gateway = get_payment_gateway()
        hold = gateway.authorize(
            12000,
            "cus_ABC123",
            idempotency_key="authorize_r-1",
            metadata={"rental_id": "r-1"},
        )
    """

    CURRENCY = "usd"
    MIN_AMOUNT = 50
    MAX_AMOUNT = 99_999_999
    WEBHOOK_TOLERANCE_SECONDS = 300
    REQUEST_TIMEOUT_SECONDS = 20
    EPHEMERAL_KEY_API_VERSION = "2024-06-20"

    def __init__(self, environment: str | None = None) -> None:
        """Initialize the gateway with credentials from SSM.

        Args:
            environment: Environment name (dev, prod). Defaults to ENVIRONMENT env var.
        """
        self._environment = environment or os.environ.get("ENVIRONMENT", "dev")
        self._ssm = get_ssm_service()
        self._client: StripeClient | None = None
        self._webhook_secret: str | None = None

    def _get_client(self) -> StripeClient:
        """Get or create the Stripe client (lazy initialization).

        Raises:
            GatewayError: If credentials cannot be retrieved.
        """
        if self._client is None:
            try:
                secret_key = self._ssm.get_parameter(
                    parameter_path("stripe/secret_key", self._environment)
                )
            except SSMServiceError as e:
                raise GatewayError(f"Failed to initialize Stripe client: {e}") from e
            self._client = StripeClient(
                secret_key,
                max_network_retries=0,
                http_client=stripe.RequestsClient(timeout=self.REQUEST_TIMEOUT_SECONDS),
            )
            logger.info("Stripe client initialized for environment: %s", self._environment)
        return self._client

    def _get_webhook_secret(self) -> str:
        if self._webhook_secret is None:
            try:
                self._webhook_secret = self._ssm.get_parameter(
                    parameter_path("stripe/webhook_secret", self._environment)
                )
            except SSMServiceError as e:
                raise GatewayError(f"Failed to get webhook secret: {e}") from e
        return self._webhook_secret

    # =========================================================================
    # Amount validation
    # =========================================================================

    def _check_amount(self, amount: Any, minimum: int) -> int:
        """Reject amounts the processor must never see.

        Args:
            amount: Candidate amount in cents
            minimum: Smallest acceptable amount

        Returns:
            The amount, unchanged.

        Raises:
            ValidationError: If amount is not an integer or outside [minimum, MAX_AMOUNT]
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                details={"amount": str(amount), "reason": "not_integer"},
            )
        if amount < minimum or amount > self.MAX_AMOUNT:
            raise ValidationError(
                ErrorCode.INVALID_AMOUNT,
                details={"amount": amount, "minimum": minimum, "maximum": self.MAX_AMOUNT},
            )
        return amount

    def validate_charge_amount(self, amount: Any) -> int:
        """Validate an amount that will be charged to a card."""
        return self._check_amount(amount, self.MIN_AMOUNT)

    def _raise_gateway_error(self, operation: str, e: stripe.StripeError) -> NoReturn:
        error_code = getattr(e, "code", None)
        if isinstance(e, stripe.APIConnectionError):
            logger.error("Stripe %s timed out or lost connection: %s", operation, str(e))
            raise GatewayTimeout(
                f"Stripe {operation} outcome unknown: {e}",
                stripe_error_code="api_connection_error",
            ) from e
        logger.error("Stripe %s failed: %s (code: %s)", operation, str(e), error_code)
        raise GatewayError(
            get_user_friendly_stripe_message(error_code, f"Failed to {operation}: {e}"),
            stripe_error_code=error_code,
        ) from e

    # =========================================================================
    # Payment intents
    # =========================================================================

    def authorize(
        self,
        amount: int,
        customer_id: str,
        *,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        capture_method: str = "manual",
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create a payment intent that holds (or, with automatic capture, charges) funds.

        Args:
            amount: Amount in cents.
            customer_id: Stripe customer ID (cus_xxx) of the payer.
            idempotency_key: Stable key for this logical operation.
            metadata: Metadata stored on the intent (rental_id, type).
            capture_method: "manual" for an authorization hold, "automatic" to charge.
            description: Optional statement description.

        Returns:
            Dict with payment_intent_id, client_secret, status and amount.

        Raises:
            ValidationError: If the amount is out of bounds (no network call made).
            GatewayError: If Stripe rejects the request.
            GatewayTimeout: If the outcome is unknown.
        """
        self.validate_charge_amount(amount)
        client = self._get_client()

        params: dict[str, Any] = {
            "amount": amount,
            "currency": self.CURRENCY,
            "customer": customer_id,
            "capture_method": capture_method,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata or {},
        }
        if description:
            params["description"] = description

        try:
            logger.info(
                "Creating payment intent (%s capture), amount %d cents, key %s",
                capture_method,
                amount,
                idempotency_key,
            )
            intent = client.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("authorize payment", e)

        logger.info("Payment intent created: %s (%s)", intent.id, intent.status)
        return {
            "payment_intent_id": intent.id,
            "client_secret": intent.client_secret,
            "status": intent.status,
            "amount": intent.amount,
        }

    def get_authorization(self, payment_intent_id: str) -> dict[str, Any]:
        """Retrieve the live state of a payment intent.

        Returns:
            Dict with payment_intent_id, status, amount, amount_capturable,
            amount_received, client_secret and customer.
        """
        client = self._get_client()
        try:
            intent = client.payment_intents.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            self._raise_gateway_error("retrieve payment", e)

        return {
            "payment_intent_id": intent.id,
            "status": intent.status,
            "amount": intent.amount,
            "amount_capturable": getattr(intent, "amount_capturable", 0),
            "amount_received": getattr(intent, "amount_received", 0),
            "client_secret": intent.client_secret,
            "customer": intent.customer,
        }

    def capture(self, payment_intent_id: str, *, idempotency_key: str) -> dict[str, Any]:
        """Capture a held authorization in full."""
        client = self._get_client()
        try:
            logger.info("Capturing payment intent %s", payment_intent_id)
            intent = client.payment_intents.capture(
                payment_intent_id,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("capture payment", e)

        return {
            "payment_intent_id": intent.id,
            "status": intent.status,
            "amount_received": intent.amount_received,
        }

    def cancel(self, payment_intent_id: str, *, idempotency_key: str) -> dict[str, Any]:
        """Release an uncaptured authorization hold."""
        client = self._get_client()
        try:
            logger.info("Cancelling payment intent %s", payment_intent_id)
            intent = client.payment_intents.cancel(
                payment_intent_id,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("cancel payment", e)

        return {"payment_intent_id": intent.id, "status": intent.status}

    # =========================================================================
    # Money out
    # =========================================================================

    def refund(
        self,
        payment_intent_id: str,
        amount: int | None = None,
        *,
        idempotency_key: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Refund a captured payment, in full when amount is omitted.

        Args:
            payment_intent_id: Stripe PaymentIntent ID (pi_xxx).
            amount: Refund amount in cents. If None, full refund.
            idempotency_key: Stable key for this logical operation.
            reason: Reason for refund (stored in metadata).

        Returns:
            Dict with refund_id, amount and status.
        """
        if amount is not None:
            self._check_amount(amount, 1)
        client = self._get_client()

        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["metadata"] = {"reason": reason}

        try:
            logger.info(
                "Creating refund for PaymentIntent %s, amount %s cents",
                payment_intent_id,
                amount if amount is not None else "full",
            )
            refund = client.refunds.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("create refund", e)

        logger.info("Refund created: %s for PaymentIntent %s", refund.id, payment_intent_id)
        return {"refund_id": refund.id, "amount": refund.amount, "status": refund.status}

    def transfer(
        self,
        amount: int,
        destination: str,
        *,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Transfer funds to a connected account (lender payout).

        Args:
            amount: Amount in cents.
            destination: Connected account ID (acct_xxx).
            idempotency_key: Stable key for this logical operation.
            metadata: Metadata stored on the transfer.

        Returns:
            Dict with transfer_id, amount and destination.
        """
        self._check_amount(amount, 1)
        client = self._get_client()
        try:
            logger.info("Creating transfer of %d cents to %s", amount, destination)
            transfer = client.transfers.create(
                params={
                    "amount": amount,
                    "currency": self.CURRENCY,
                    "destination": destination,
                    "metadata": metadata or {},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("create transfer", e)

        return {
            "transfer_id": transfer.id,
            "amount": transfer.amount,
            "destination": transfer.destination,
        }

    def reverse_transfer(
        self, transfer_id: str, amount: int, *, idempotency_key: str
    ) -> dict[str, Any]:
        """Pull part of a lender payout back to the platform account.

        Returns:
            Dict with reversal_id, transfer_id and amount.
        """
        self._check_amount(amount, 1)
        client = self._get_client()
        try:
            logger.info("Reversing %d cents of transfer %s", amount, transfer_id)
            reversal = client.transfers.reversals.create(
                transfer_id,
                params={"amount": amount},
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("reverse transfer", e)

        return {"reversal_id": reversal.id, "transfer_id": transfer_id, "amount": reversal.amount}

    # =========================================================================
    # Customers
    # =========================================================================

    def create_customer_if_absent(
        self,
        user_id: str,
        existing_customer_id: str | None = None,
        email: str | None = None,
    ) -> str:
        """Return the member's Stripe customer ID, creating one when missing.

        Args:
            user_id: Member ID, stored as customer metadata.
            existing_customer_id: Customer ID already on the profile, if any.
            email: Optional email for receipts.

        Returns:
            Stripe customer ID (cus_xxx).
        """
        if existing_customer_id:
            return existing_customer_id

        client = self._get_client()
        params: dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        try:
            customer = client.customers.create(
                params=params,
                options={"idempotency_key": f"customer_{user_id}"},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("create customer", e)

        logger.info("Stripe customer %s created for user %s", customer.id, user_id)
        return customer.id

    def create_ephemeral_key(self, customer_id: str) -> str:
        """Create an ephemeral key so the client SDK can act for the customer."""
        client = self._get_client()
        try:
            key = client.ephemeral_keys.create(
                params={"customer": customer_id},
                options={"stripe_version": self.EPHEMERAL_KEY_API_VERSION},
            )
        except stripe.StripeError as e:
            self._raise_gateway_error("create ephemeral key", e)
        return key.secret

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a webhook signature and parse the event.

        The signature is checked over the raw bytes before anything is parsed.

        Args:
            payload: Raw request body bytes, exactly as received.
            signature: Stripe-Signature header value.

        Returns:
            Parsed event as a plain dictionary.

        Raises:
            SignatureInvalid: If signature is missing, invalid or outside tolerance.
            ValidationError: If the payload is not a JSON object.
        """
        if not signature:
            raise SignatureInvalid(message="Missing Stripe-Signature header")

        webhook_secret = self._get_webhook_secret()
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                webhook_secret,
                tolerance=self.WEBHOOK_TOLERANCE_SECONDS,
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise SignatureInvalid() from e
        except ValueError as e:
            logger.warning("Malformed webhook payload: %s", str(e))
            raise ValidationError(ErrorCode.MALFORMED_WEBHOOK) from e

        if not isinstance(event, dict):
            raise ValidationError(ErrorCode.MALFORMED_WEBHOOK)

        logger.info("Webhook signature verified for event: %s", event.get("id"))
        return event

    @staticmethod
    def compute_payload_hash(payload: bytes) -> str:
        """Compute SHA-256 hash of webhook payload for the audit ledger."""
        return hashlib.sha256(payload).hexdigest()


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    """Get the shared PaymentGateway instance (singleton pattern)."""
    return PaymentGateway()
