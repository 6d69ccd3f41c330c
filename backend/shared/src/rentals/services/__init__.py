"""Services for rental orchestration: fees, processor, stores, transitions, webhooks."""

from .access_gate import AccessGate
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .event_ledger import EventLedger
from .fee_calculator import DamageSettlement, FeeBreakdown, FeeCalculator
from .listing_store import ListingStore
from .payment_gateway import PaymentGateway, get_payment_gateway
from .rental_engine import LateFeeCharge, PaymentConfirmation, RentalEngine
from .rental_store import RentalStore
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .user_store import UserStore
from .webhook_reconciler import WebhookReconciler, WebhookResult

__all__ = [
    "AccessGate",
    "DamageSettlement",
    "DynamoDBService",
    "EventLedger",
    "FeeBreakdown",
    "FeeCalculator",
    "LateFeeCharge",
    "ListingStore",
    "PaymentConfirmation",
    "PaymentGateway",
    "RentalEngine",
    "RentalStore",
    "SSMService",
    "SSMServiceError",
    "UserStore",
    "WebhookReconciler",
    "WebhookResult",
    "get_dynamodb_service",
    "get_payment_gateway",
    "get_ssm_service",
    "reset_dynamodb_service",
]
