"""Contract tests for POST /webhooks/processor.

The real PaymentGateway verifies HMAC signatures against a webhook secret
stored in (mocked) SSM; the ledger and stores run on moto.

Test categories:
- Signature validation (400)
- Malformed payloads (400)
- Event processing and idempotent duplicates (200)
- Unhandled event types (200 - ignored)
- Failed effects (409) leave the event retryable
"""

import datetime as dt
import hashlib
import hmac
import json
import time
from collections.abc import Generator
from typing import Any

import boto3
import pytest
from fastapi.testclient import TestClient
from starlette.status import HTTP_200_OK, HTTP_400_BAD_REQUEST, HTTP_409_CONFLICT

from conftest import BORROWER_ID, LENDER_ID, LISTING_ID, NOW, STRANGER_ID, put_user
from rentals.models import PaymentStatus, RentalStatus, SubscriptionTier
from rentals.services.payment_gateway import get_payment_gateway
from rentals.services.webhook_reconciler import WebhookReconciler
from rentals_api.dependencies import get_rental_engine, get_webhook_reconciler
from rentals_api.main import app

TEST_WEBHOOK_SECRET = "whsec_test_secret_for_testing"
WEBHOOK_URL = "/api/webhooks/processor"


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


def _event(event_type: str, obj: dict[str, Any], event_id: str = "evt_1ABC123DEF456") -> dict[str, Any]:
    return {
        "id": event_id,
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def _post_event(client: TestClient, event: dict[str, Any], secret: str = TEST_WEBHOOK_SECRET) -> Any:
    payload = json.dumps(event).encode("utf-8")
    return client.post(
        WEBHOOK_URL,
        content=payload,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": _create_stripe_signature(payload, secret),
        },
    )


# === Test Fixtures ===


@pytest.fixture
def webhook_secret(dynamodb: Any) -> str:
    """Store the webhook signing secret in mocked SSM."""
    ssm = boto3.client("ssm", region_name="eu-west-1")
    ssm.put_parameter(
        Name="/rentals/test/stripe/webhook_secret",
        Value=TEST_WEBHOOK_SECRET,
        Type="SecureString",
    )
    return TEST_WEBHOOK_SECRET


@pytest.fixture
def client(
    seeded: Any,
    webhook_secret: str,
    engine: Any,
    rental_store: Any,
    listing_store: Any,
    user_store: Any,
    event_ledger: Any,
) -> Generator[TestClient, None, None]:
    """Real gateway for signature checks; stores share the test clock with the engine."""
    reconciler = WebhookReconciler(
        gateway=get_payment_gateway(),
        ledger=event_ledger,
        rentals=rental_store,
        listings=listing_store,
        users=user_store,
    )
    app.dependency_overrides[get_rental_engine] = lambda: engine
    app.dependency_overrides[get_webhook_reconciler] = lambda: reconciler
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def approved_rental_id(seeded: Any, engine: Any) -> str:
    rental = engine.request(
        BORROWER_ID, LISTING_ID, NOW + dt.timedelta(days=1), NOW + dt.timedelta(days=4)
    )
    return engine.approve(LENDER_ID, rental.rental_id).rental_id


def _hold_event(rental_id: str, event_id: str = "evt_1ABC123DEF456") -> dict[str, Any]:
    return _event(
        "payment_intent.amount_capturable_updated",
        {
            "id": "pi_rental123",
            "object": "payment_intent",
            "amount_capturable": 16000,
            "metadata": {"rental_id": rental_id, "type": "rental"},
        },
        event_id,
    )


# === Signature validation ===


class TestSignature:
    """Requests that fail authentication never reach a handler."""

    def test_missing_signature(self, client: TestClient) -> None:
        response = client.post(WEBHOOK_URL, content=b"{}")

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_STRIPE_001"

    def test_wrong_secret(self, client: TestClient, approved_rental_id: str, rental_store: Any) -> None:
        response = _post_event(client, _hold_event(approved_rental_id), secret="whsec_wrong")

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_STRIPE_001"
        assert rental_store.get(approved_rental_id).status == RentalStatus.APPROVED

    def test_stale_timestamp(self, client: TestClient) -> None:
        payload = json.dumps(_event("invoice.paid", {"id": "in_1"})).encode()
        stale = int(time.time()) - 3600

        response = client.post(
            WEBHOOK_URL,
            content=payload,
            headers={"Stripe-Signature": _create_stripe_signature(payload, TEST_WEBHOOK_SECRET, stale)},
        )

        assert response.status_code == HTTP_400_BAD_REQUEST

    def test_signed_but_not_json(self, client: TestClient) -> None:
        payload = b"not json"

        response = client.post(
            WEBHOOK_URL,
            content=payload,
            headers={"Stripe-Signature": _create_stripe_signature(payload, TEST_WEBHOOK_SECRET)},
        )

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_STRIPE_004"

    def test_event_without_object(self, client: TestClient) -> None:
        response = _post_event(client, {"id": "evt_1", "type": "invoice.paid", "data": {}})

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_STRIPE_004"


# === Event processing ===


class TestProcessing:
    """Verified events are applied once and acknowledged."""

    def test_hold_marks_rental_paid(
        self, client: TestClient, approved_rental_id: str, rental_store: Any
    ) -> None:
        response = _post_event(client, _hold_event(approved_rental_id))

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["received"] is True
        assert data["event_id"] == "evt_1ABC123DEF456"
        assert data["processing_result"] == "success"

        rental = rental_store.get(approved_rental_id)
        assert rental.status == RentalStatus.PAID
        assert rental.payment_status == PaymentStatus.AUTHORIZED

    def test_duplicate_event(
        self, client: TestClient, approved_rental_id: str, rental_store: Any
    ) -> None:
        _post_event(client, _hold_event(approved_rental_id))
        version = rental_store.get(approved_rental_id).version

        response = _post_event(client, _hold_event(approved_rental_id))

        assert response.status_code == HTTP_200_OK
        assert response.json()["processing_result"] == "duplicate"
        assert rental_store.get(approved_rental_id).version == version

    def test_unhandled_event_type(self, client: TestClient) -> None:
        response = _post_event(client, _event("payment_intent.created", {"id": "pi_test"}))

        assert response.status_code == HTTP_200_OK
        assert response.json()["processing_result"] == "ignored"

    def test_invoice_paid(self, client: TestClient, seeded: Any, user_store: Any) -> None:
        put_user(seeded, STRANGER_ID, stripe_subscription_id="sub_123")

        response = _post_event(
            client, _event("invoice.paid", {"id": "in_1", "subscription": "sub_123"})
        )

        assert response.json()["processing_result"] == "success"
        assert user_store.get(STRANGER_ID).subscription_tier == SubscriptionTier.PLUS

    def test_locked_rental_is_retryable(
        self,
        client: TestClient,
        approved_rental_id: str,
        rental_store: Any,
        event_ledger: Any,
    ) -> None:
        """A 409 makes the sender redeliver; the redelivery is processed."""
        event = _hold_event(approved_rental_id)

        with rental_store.locked(approved_rental_id):
            response = _post_event(client, event)

        assert response.status_code == HTTP_409_CONFLICT
        assert event_ledger.get("evt_1ABC123DEF456") is None

        retry = _post_event(client, event)

        assert retry.json()["processing_result"] == "success"
        assert rental_store.get(approved_rental_id).status == RentalStatus.PAID
