"""FastAPI dependency injection providers for shared services.

Factory functions use @lru_cache so each service is built once per process.

Service Dependency Graph:
    DynamoDBService (singleton via get_dynamodb_service)
        ├── RentalStore
        ├── ListingStore
        ├── UserStore ── AccessGate
        └── EventLedger
    PaymentGateway (singleton via get_payment_gateway)

    RentalEngine      = RentalStore + ListingStore + UserStore + PaymentGateway
    WebhookReconciler = PaymentGateway + EventLedger + RentalStore + ListingStore + UserStore

Testing:
    Use reset_services() to clear cached instances between tests, or
    override get_rental_engine / get_webhook_reconciler via
    app.dependency_overrides.
"""

from functools import lru_cache

from rentals.services.access_gate import AccessGate
from rentals.services.dynamodb import get_dynamodb_service
from rentals.services.event_ledger import EventLedger
from rentals.services.listing_store import ListingStore
from rentals.services.payment_gateway import get_payment_gateway
from rentals.services.rental_engine import RentalEngine
from rentals.services.rental_store import RentalStore
from rentals.services.user_store import UserStore
from rentals.services.webhook_reconciler import WebhookReconciler


@lru_cache
def get_rental_store() -> RentalStore:
    return RentalStore(db=get_dynamodb_service())


@lru_cache
def get_listing_store() -> ListingStore:
    return ListingStore(db=get_dynamodb_service())


@lru_cache
def get_user_store() -> UserStore:
    return UserStore(db=get_dynamodb_service())


@lru_cache
def get_event_ledger() -> EventLedger:
    return EventLedger(db=get_dynamodb_service())


@lru_cache
def get_access_gate() -> AccessGate:
    return AccessGate(users=get_user_store())


@lru_cache
def get_rental_engine() -> RentalEngine:
    """Get cached RentalEngine instance.

    Returns:
        RentalEngine wired to the DynamoDB stores and the payment gateway.
    """
    return RentalEngine(
        rentals=get_rental_store(),
        listings=get_listing_store(),
        users=get_user_store(),
        gateway=get_payment_gateway(),
    )


@lru_cache
def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(
        gateway=get_payment_gateway(),
        ledger=get_event_ledger(),
        rentals=get_rental_store(),
        listings=get_listing_store(),
        users=get_user_store(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Call this in test fixtures to ensure clean state between tests.
    Also resets the underlying DynamoDB singleton and payment gateway.
    """
    from rentals.services.dynamodb import reset_dynamodb_service

    get_rental_store.cache_clear()
    get_listing_store.cache_clear()
    get_user_store.cache_clear()
    get_event_ledger.cache_clear()
    get_access_gate.cache_clear()
    get_rental_engine.cache_clear()
    get_webhook_reconciler.cache_clear()
    get_payment_gateway.cache_clear()

    reset_dynamodb_service()
