"""Pytest configuration and fixtures for rentals backend tests.

This module provides reusable fixtures for testing:
- DynamoDB mocking with moto (rentals, listings, users, webhook ledger)
- A controllable clock shared by every store and service
- A MagicMock payment gateway with realistic return values
- Seed helpers for listings and member profiles
- Bearer token helper for API tests
"""

import datetime as dt
import os
from collections.abc import Generator
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import boto3
import jwt
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ["DYNAMODB_TABLE_PREFIX"] = "test-rentals"
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"

if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

TABLE_PREFIX = "test-rentals"
TEST_JWT_SECRET = os.environ["JWT_SECRET"]

BORROWER_ID = "user-borrower-1"
LENDER_ID = "user-lender-1"
STRANGER_ID = "user-stranger-1"
LISTING_ID = "listing-drill-1"
BORROWER_CUSTOMER_ID = "cus_borrower123"
LENDER_CONNECT_ACCOUNT_ID = "acct_lender123"

NOW = dt.datetime(2025, 7, 1, 12, 0, tzinfo=dt.UTC)


# === Clock ===


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# === DynamoDB Fixtures ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached services before and after each test.

    This ensures tests using mock_aws get fresh service instances inside
    the mock context rather than reusing ones from a previous test.
    """
    from rentals.services.dynamodb import reset_dynamodb_service
    from rentals.services.payment_gateway import get_payment_gateway
    from rentals.services.ssm_service import SSMService, get_ssm_service
    from rentals_api.dependencies import reset_services
    from rentals_api.security import get_jwt_secret

    def reset() -> None:
        reset_services()
        reset_dynamodb_service()
        get_payment_gateway.cache_clear()
        get_ssm_service.cache_clear()
        get_jwt_secret.cache_clear()
        SSMService._instance = None
        SSMService._cache.clear()

    reset()
    yield
    reset()


def _table_definitions() -> list[dict[str, Any]]:
    def gsi(name: str) -> dict[str, Any]:
        return {
            "IndexName": f"{name}-index",
            "KeySchema": [{"AttributeName": name, "KeyType": "HASH"}],
            "Projection": {"ProjectionType": "ALL"},
        }

    return [
        {
            "TableName": f"{TABLE_PREFIX}-rentals",
            "KeySchema": [{"AttributeName": "rental_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [{"AttributeName": "rental_id", "AttributeType": "S"}],
            "BillingMode": "PAY_PER_REQUEST",
        },
        {
            "TableName": f"{TABLE_PREFIX}-listings",
            "KeySchema": [{"AttributeName": "listing_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [{"AttributeName": "listing_id", "AttributeType": "S"}],
            "BillingMode": "PAY_PER_REQUEST",
        },
        {
            "TableName": f"{TABLE_PREFIX}-users",
            "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": "user_id", "AttributeType": "S"},
                {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
                {"AttributeName": "stripe_subscription_id", "AttributeType": "S"},
                {"AttributeName": "stripe_connect_account_id", "AttributeType": "S"},
            ],
            "GlobalSecondaryIndexes": [
                gsi("stripe_customer_id"),
                gsi("stripe_subscription_id"),
                gsi("stripe_connect_account_id"),
            ],
            "BillingMode": "PAY_PER_REQUEST",
        },
        {
            "TableName": f"{TABLE_PREFIX}-processor-webhook-events",
            "KeySchema": [{"AttributeName": "event_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [{"AttributeName": "event_id", "AttributeType": "S"}],
            "BillingMode": "PAY_PER_REQUEST",
        },
    ]


@pytest.fixture
def aws_credentials() -> None:
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "eu-west-1"


@pytest.fixture
def dynamodb(aws_credentials: None) -> Generator[Any, None, None]:
    """Mocked DynamoDB with every table created; yields the boto3 resource."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name="eu-west-1")
        for definition in _table_definitions():
            client.create_table(**definition)
        yield boto3.resource("dynamodb", region_name="eu-west-1")


@pytest.fixture
def db(dynamodb: Any) -> Any:
    """DynamoDBService bound to the mocked tables."""
    from rentals.services.dynamodb import get_dynamodb_service

    return get_dynamodb_service()


# === Store Fixtures ===


@pytest.fixture
def rental_store(db: Any, clock: FakeClock) -> Any:
    from rentals.services.rental_store import RentalStore

    return RentalStore(db, clock=clock)


@pytest.fixture
def listing_store(db: Any) -> Any:
    from rentals.services.listing_store import ListingStore

    return ListingStore(db)


@pytest.fixture
def user_store(db: Any) -> Any:
    from rentals.services.user_store import UserStore

    return UserStore(db)


@pytest.fixture
def event_ledger(db: Any, clock: FakeClock) -> Any:
    from rentals.services.event_ledger import EventLedger

    return EventLedger(db, clock=clock)


# === Seed Data ===


def put_listing(dynamodb: Any, **overrides: Any) -> dict[str, Any]:
    """Insert a listing row; prices are major units like real listings."""
    item: dict[str, Any] = {
        "listing_id": LISTING_ID,
        "owner_id": LENDER_ID,
        "title": "Cordless drill",
        "status": "active",
        "is_available": True,
        "price_per_day": Decimal("20.00"),
        "deposit_amount": Decimal("100.00"),
        "late_fee_per_day": Decimal("5.00"),
        "times_borrowed": 0,
        "total_earnings": 0,
    }
    item.update(overrides)
    dynamodb.Table(f"{TABLE_PREFIX}-listings").put_item(Item=item)
    return item


def put_user(dynamodb: Any, user_id: str, **overrides: Any) -> dict[str, Any]:
    """Insert a member profile row."""
    item: dict[str, Any] = {"user_id": user_id, "subscription_tier": "free"}
    item.update(overrides)
    dynamodb.Table(f"{TABLE_PREFIX}-users").put_item(Item=item)
    return item


def unlocked_profile(**overrides: Any) -> dict[str, Any]:
    """Profile attributes that pass every access gate step."""
    attrs: dict[str, Any] = {
        "subscription_tier": "plus",
        "is_verified": True,
        "verification_status": "verified",
        "stripe_connect_account_id": LENDER_CONNECT_ACCOUNT_ID,
        "payouts_enabled": True,
    }
    attrs.update(overrides)
    return attrs


@pytest.fixture
def seeded(dynamodb: Any) -> Any:
    """Default listing, a subscribed and verified borrower, and a fully unlocked lender."""
    put_listing(dynamodb)
    put_user(
        dynamodb,
        BORROWER_ID,
        email="borrower@example.com",
        stripe_customer_id=BORROWER_CUSTOMER_ID,
        subscription_tier="plus",
        is_verified=True,
        verification_status="verified",
    )
    put_user(dynamodb, LENDER_ID, email="lender@example.com", **unlocked_profile())
    return dynamodb


# === Payment Gateway Fixtures ===


@pytest.fixture
def mock_gateway() -> MagicMock:
    """MagicMock payment gateway returning processor-shaped dicts."""
    from rentals.services.payment_gateway import PaymentGateway

    gateway = MagicMock(spec=PaymentGateway)
    gateway.create_customer_if_absent.side_effect = (
        lambda user_id, existing=None, email=None: existing or f"cus_new_{user_id}"
    )
    gateway.authorize.return_value = {
        "payment_intent_id": "pi_rental123",
        "client_secret": "pi_rental123_secret_abc",
        "status": "requires_payment_method",
        "amount": 16000,
    }
    gateway.get_authorization.return_value = {
        "payment_intent_id": "pi_rental123",
        "status": "requires_payment_method",
        "amount": 16000,
        "amount_capturable": 0,
        "amount_received": 0,
        "client_secret": "pi_rental123_secret_abc",
        "customer": BORROWER_CUSTOMER_ID,
    }
    gateway.capture.return_value = {
        "payment_intent_id": "pi_rental123",
        "status": "succeeded",
        "amount_received": 16000,
    }
    gateway.cancel.return_value = {"payment_intent_id": "pi_rental123", "status": "canceled"}
    gateway.refund.return_value = {"refund_id": "re_123", "amount": 10000, "status": "succeeded"}
    gateway.transfer.return_value = {
        "transfer_id": "tr_payout123",
        "amount": 5880,
        "destination": LENDER_CONNECT_ACCOUNT_ID,
    }
    gateway.create_ephemeral_key.return_value = "ek_test_secret"
    gateway.compute_payload_hash.side_effect = PaymentGateway.compute_payload_hash
    return gateway


@pytest.fixture
def engine(
    rental_store: Any,
    listing_store: Any,
    user_store: Any,
    mock_gateway: MagicMock,
    clock: FakeClock,
) -> Any:
    from rentals.services.rental_engine import RentalEngine

    return RentalEngine(
        rentals=rental_store,
        listings=listing_store,
        users=user_store,
        gateway=mock_gateway,
        clock=clock,
    )


# === Auth Helpers ===


def make_token(user_id: str, *, claim: str = "sub", expires_in: int = 3600) -> str:
    """Sign a bearer token the API accepts."""
    now = dt.datetime.now(dt.UTC)
    payload = {claim: user_id, "iat": now, "exp": now + dt.timedelta(seconds=expires_in)}
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}
