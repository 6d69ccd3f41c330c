"""Unit tests for PaymentGateway.

Test categories:
- Authorization holds and late fee charges (payment intents)
- Capture, cancel, refund and transfer
- Customer bootstrap and ephemeral keys
- Amount validation before any network call
- Stripe error translation (declines, timeouts)
- Webhook signature verification with real HMAC signatures
"""

import hashlib
import hmac
import json
import time
from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe

from rentals.models import (
    ErrorCode,
    GatewayError,
    GatewayTimeout,
    SignatureInvalid,
    ValidationError,
)
from rentals.services.payment_gateway import PaymentGateway

TEST_WEBHOOK_SECRET = "whsec_test_secret_for_testing"


# === Helper Functions ===


def _create_stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Create a valid Stripe webhook signature.

    Stripe signatures use HMAC-SHA256 with format: t={timestamp},v1={signature}
    """
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signed_payload = f"{ts}.{payload.decode('utf-8')}"
    signature = hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={ts},v1={signature}"


# === Fixtures ===


@pytest.fixture
def stripe_client() -> Generator[MagicMock, None, None]:
    with patch("rentals.services.payment_gateway.StripeClient") as client_cls:
        client = MagicMock()
        client_cls.return_value = client
        yield client


@pytest.fixture
def gateway(stripe_client: MagicMock) -> Generator[PaymentGateway, None, None]:
    ssm = MagicMock()
    ssm.get_parameter.side_effect = lambda name: (
        TEST_WEBHOOK_SECRET if name.endswith("webhook_secret") else "sk_test_123"
    )
    with patch("rentals.services.payment_gateway.get_ssm_service", return_value=ssm):
        yield PaymentGateway(environment="test")


def _intent(**attrs: Any) -> MagicMock:
    defaults = {
        "id": "pi_test123",
        "client_secret": "pi_test123_secret",
        "status": "requires_payment_method",
        "amount": 16000,
        "amount_capturable": 0,
        "amount_received": 0,
        "customer": "cus_abc",
    }
    defaults.update(attrs)
    intent = MagicMock()
    for key, value in defaults.items():
        setattr(intent, key, value)
    return intent


# === Authorization ===


class TestAuthorize:
    """Tests for creating holds and charges."""

    def test_manual_capture_hold(self, gateway: PaymentGateway, stripe_client: MagicMock) -> None:
        """A rental hold is a manual-capture intent with the idempotency key."""
        stripe_client.payment_intents.create.return_value = _intent()

        result = gateway.authorize(
            16000,
            "cus_abc",
            idempotency_key="authorize_r-1",
            metadata={"rental_id": "r-1", "type": "rental"},
        )

        assert result == {
            "payment_intent_id": "pi_test123",
            "client_secret": "pi_test123_secret",
            "status": "requires_payment_method",
            "amount": 16000,
        }
        call = stripe_client.payment_intents.create.call_args
        assert call.kwargs["params"]["capture_method"] == "manual"
        assert call.kwargs["params"]["amount"] == 16000
        assert call.kwargs["params"]["currency"] == "usd"
        assert call.kwargs["params"]["customer"] == "cus_abc"
        assert call.kwargs["params"]["metadata"] == {"rental_id": "r-1", "type": "rental"}
        assert call.kwargs["options"] == {"idempotency_key": "authorize_r-1"}

    def test_automatic_capture_for_late_fee(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.payment_intents.create.return_value = _intent(amount=1500)

        gateway.authorize(1500, "cus_abc", idempotency_key="late_fee_r-1_3", capture_method="automatic")

        params = stripe_client.payment_intents.create.call_args.kwargs["params"]
        assert params["capture_method"] == "automatic"

    @pytest.mark.parametrize("amount", [0, 49, 100_000_000, -5])
    def test_out_of_bounds_amount_never_reaches_processor(
        self, gateway: PaymentGateway, stripe_client: MagicMock, amount: int
    ) -> None:
        """Amounts outside [50, 99999999] fail locally."""
        with pytest.raises(ValidationError) as exc_info:
            gateway.authorize(amount, "cus_abc", idempotency_key="k")

        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT
        stripe_client.payment_intents.create.assert_not_called()

    @pytest.mark.parametrize("amount", [100.5, "100", True, None])
    def test_non_integer_amount_rejected(
        self, gateway: PaymentGateway, stripe_client: MagicMock, amount: Any
    ) -> None:
        with pytest.raises(ValidationError):
            gateway.authorize(amount, "cus_abc", idempotency_key="k")
        stripe_client.payment_intents.create.assert_not_called()

    def test_card_decline_becomes_gateway_error(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        """A decline carries a friendly message and the processor code."""
        stripe_client.payment_intents.create.side_effect = stripe.CardError(
            "Your card was declined.", param=None, code="card_declined"
        )

        with pytest.raises(GatewayError) as exc_info:
            gateway.authorize(16000, "cus_abc", idempotency_key="authorize_r-1")

        error = exc_info.value
        assert not isinstance(error, GatewayTimeout)
        assert error.code == ErrorCode.STRIPE_API_ERROR
        assert error.stripe_error_code == "card_declined"
        assert "declined" in error.message
        assert error.retryable is False

    def test_connection_error_becomes_timeout(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        """A lost connection means the outcome is unknown, not failed."""
        stripe_client.payment_intents.create.side_effect = stripe.APIConnectionError(
            "Request timed out"
        )

        with pytest.raises(GatewayTimeout) as exc_info:
            gateway.authorize(16000, "cus_abc", idempotency_key="authorize_r-1")

        assert exc_info.value.code == ErrorCode.STRIPE_TIMEOUT
        assert exc_info.value.retryable is True

    def test_get_authorization(self, gateway: PaymentGateway, stripe_client: MagicMock) -> None:
        stripe_client.payment_intents.retrieve.return_value = _intent(
            status="requires_capture", amount_capturable=16000
        )

        result = gateway.get_authorization("pi_test123")

        assert result["status"] == "requires_capture"
        assert result["amount_capturable"] == 16000
        assert result["customer"] == "cus_abc"
        stripe_client.payment_intents.retrieve.assert_called_once_with("pi_test123")


# === Capture / cancel / refund / transfer ===


class TestMoneyMovement:
    """Tests for capture, cancel, refund and transfer calls."""

    def test_capture_uses_idempotency_key(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.payment_intents.capture.return_value = _intent(
            status="succeeded", amount_received=16000
        )

        result = gateway.capture("pi_test123", idempotency_key="capture_r-1")

        assert result["status"] == "succeeded"
        stripe_client.payment_intents.capture.assert_called_once_with(
            "pi_test123", options={"idempotency_key": "capture_r-1"}
        )

    def test_cancel(self, gateway: PaymentGateway, stripe_client: MagicMock) -> None:
        stripe_client.payment_intents.cancel.return_value = _intent(status="canceled")

        result = gateway.cancel("pi_test123", idempotency_key="cancel_r-1")

        assert result == {"payment_intent_id": "pi_test123", "status": "canceled"}

    def test_partial_refund(self, gateway: PaymentGateway, stripe_client: MagicMock) -> None:
        refund = MagicMock(id="re_1", amount=7500, status="succeeded")
        stripe_client.refunds.create.return_value = refund

        result = gateway.refund(
            "pi_test123", 7500, idempotency_key="damage_refund_r-1_0", reason="damage_claim_release"
        )

        assert result == {"refund_id": "re_1", "amount": 7500, "status": "succeeded"}
        call = stripe_client.refunds.create.call_args
        assert call.kwargs["params"] == {
            "payment_intent": "pi_test123",
            "amount": 7500,
            "metadata": {"reason": "damage_claim_release"},
        }
        assert call.kwargs["options"] == {"idempotency_key": "damage_refund_r-1_0"}

    def test_full_refund_omits_amount(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.refunds.create.return_value = MagicMock(id="re_2", amount=16000, status="succeeded")

        gateway.refund("pi_test123", idempotency_key="cancel_refund_r-1")

        assert "amount" not in stripe_client.refunds.create.call_args.kwargs["params"]

    def test_refund_of_zero_rejected(self, gateway: PaymentGateway, stripe_client: MagicMock) -> None:
        with pytest.raises(ValidationError):
            gateway.refund("pi_test123", 0, idempotency_key="k")
        stripe_client.refunds.create.assert_not_called()

    def test_transfer_to_connected_account(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.transfers.create.return_value = MagicMock(
            id="tr_1", amount=5880, destination="acct_lender"
        )

        result = gateway.transfer(5880, "acct_lender", idempotency_key="payout_r-1")

        assert result == {"transfer_id": "tr_1", "amount": 5880, "destination": "acct_lender"}
        params = stripe_client.transfers.create.call_args.kwargs["params"]
        assert params["destination"] == "acct_lender"
        assert params["currency"] == "usd"

    def test_reverse_part_of_transfer(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.transfers.reversals.create.return_value = MagicMock(id="trr_1", amount=1500)

        result = gateway.reverse_transfer("tr_1", 1500, idempotency_key="payout_reversal_r-1_2500")

        assert result == {"reversal_id": "trr_1", "transfer_id": "tr_1", "amount": 1500}
        call = stripe_client.transfers.reversals.create.call_args
        assert call.args == ("tr_1",)
        assert call.kwargs["params"] == {"amount": 1500}
        assert call.kwargs["options"] == {"idempotency_key": "payout_reversal_r-1_2500"}

    def test_refund_rate_limit_is_retryable(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.refunds.create.side_effect = stripe.RateLimitError(
            "Too many requests", code="rate_limit"
        )

        with pytest.raises(GatewayError) as exc_info:
            gateway.refund("pi_test123", 100, idempotency_key="k")

        assert exc_info.value.retryable is True


# === Customers ===


class TestCustomers:
    """Tests for customer bootstrap and ephemeral keys."""

    def test_existing_customer_returned_without_call(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        assert gateway.create_customer_if_absent("u-1", "cus_existing") == "cus_existing"
        stripe_client.customers.create.assert_not_called()

    def test_missing_customer_created_once_per_member(
        self, gateway: PaymentGateway, stripe_client: MagicMock
    ) -> None:
        stripe_client.customers.create.return_value = MagicMock(id="cus_new")

        customer_id = gateway.create_customer_if_absent("u-1", None, "u1@example.com")

        assert customer_id == "cus_new"
        call = stripe_client.customers.create.call_args
        assert call.kwargs["params"] == {"metadata": {"userId": "u-1"}, "email": "u1@example.com"}
        assert call.kwargs["options"] == {"idempotency_key": "customer_u-1"}

    def test_ephemeral_key(self, gateway: PaymentGateway, stripe_client: MagicMock) -> None:
        stripe_client.ephemeral_keys.create.return_value = MagicMock(secret="ek_secret")

        assert gateway.create_ephemeral_key("cus_abc") == "ek_secret"
        call = stripe_client.ephemeral_keys.create.call_args
        assert call.kwargs["params"] == {"customer": "cus_abc"}
        assert call.kwargs["options"] == {"stripe_version": PaymentGateway.EPHEMERAL_KEY_API_VERSION}


# === Webhook verification ===


class TestVerifyWebhookSignature:
    """Tests for webhook signature verification over the raw body."""

    def _payload(self) -> bytes:
        return json.dumps(
            {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
        ).encode()

    def test_valid_signature_returns_event(self, gateway: PaymentGateway) -> None:
        payload = self._payload()
        event = gateway.verify_webhook_signature(
            payload, _create_stripe_signature(payload, TEST_WEBHOOK_SECRET)
        )
        assert event["id"] == "evt_1"
        assert event["data"]["object"]["id"] == "pi_1"

    def test_missing_signature(self, gateway: PaymentGateway) -> None:
        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook_signature(self._payload(), None)

    def test_wrong_secret(self, gateway: PaymentGateway) -> None:
        payload = self._payload()
        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook_signature(
                payload, _create_stripe_signature(payload, "whsec_wrong")
            )

    def test_tampered_body(self, gateway: PaymentGateway) -> None:
        """Re-serializing the body breaks the signature."""
        payload = self._payload()
        signature = _create_stripe_signature(payload, TEST_WEBHOOK_SECRET)
        tampered = json.dumps(json.loads(payload), indent=2).encode()
        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook_signature(tampered, signature)

    def test_stale_timestamp(self, gateway: PaymentGateway) -> None:
        """Signatures older than the tolerance window are rejected."""
        payload = self._payload()
        signature = _create_stripe_signature(
            payload, TEST_WEBHOOK_SECRET, timestamp=int(time.time()) - 3600
        )
        with pytest.raises(SignatureInvalid):
            gateway.verify_webhook_signature(payload, signature)

    def test_non_json_body(self, gateway: PaymentGateway) -> None:
        payload = b"not json"
        with pytest.raises(ValidationError) as exc_info:
            gateway.verify_webhook_signature(
                payload, _create_stripe_signature(payload, TEST_WEBHOOK_SECRET)
            )
        assert exc_info.value.code == ErrorCode.MALFORMED_WEBHOOK

    def test_payload_hash_is_sha256(self) -> None:
        assert PaymentGateway.compute_payload_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()
