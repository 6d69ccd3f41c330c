"""Webhook endpoint for payment processor events.

Handles payment intent, charge, subscription, identity and Connect account
events. See WebhookReconciler for what each event does.

This endpoint does NOT require JWT authentication; it receives signed
payloads and verifies them against the raw request body.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from rentals.services.webhook_reconciler import WebhookReconciler
from rentals_api.dependencies import get_webhook_reconciler

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "Stripe-Signature"


# === Response Models ===


class WebhookResponse(BaseModel):
    """Standard webhook response."""

    received: bool
    event_id: str | None = None
    event_type: str | None = None
    processing_result: str  # "success", "duplicate", "skipped", "ignored"
    message: str | None = None


class WebhookErrorResponse(BaseModel):
    """Error response for webhook failures."""

    success: bool = False
    error_code: str
    message: str
    recovery: str | None = None


# === Webhook Endpoint ===


@router.post(
    "/webhooks/processor",
    summary="Receive payment processor webhook events",
    description="""
Endpoint for payment processor webhook events.

**No authentication required** - signature is verified using the webhook secret.

**Idempotent**: Duplicate events (same event id) return 200 with 'duplicate' result.
Unhandled event types return 200 with 'ignored' result.

Any non-2xx answer makes the sender retry; a failed effect is rolled back
from the dedup ledger so the retry reprocesses it.
""",
    response_model=WebhookResponse,
    responses={
        200: {
            "description": "Event received and processed (or acknowledged)",
            "model": WebhookResponse,
        },
        400: {
            "description": "Invalid signature, missing header, or malformed payload",
            "model": WebhookErrorResponse,
        },
        409: {
            "description": "Rental locked by a concurrent request; sender retries",
            "model": WebhookErrorResponse,
        },
    },
)
async def handle_processor_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookResponse:
    """Handle incoming processor webhook events.

    The raw body is passed through untouched for signature verification.
    """
    payload = await request.body()
    result = reconciler.handle(payload, request.headers.get(SIGNATURE_HEADER))
    return WebhookResponse(
        received=True,
        event_id=result["event_id"],
        event_type=result["event_type"],
        processing_result=result["processing_result"],
        message=result["message"],
    )
