"""Dedup ledger entry for processor webhook events."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ProcessorWebhookEvent(BaseModel):
    """Log of a received processor webhook event.

    Used for:
    - Idempotency: an event ID is applied at most once
    - Auditing: track all webhook deliveries
    """

    model_config = ConfigDict(strict=True)

    event_id: str = Field(
        ...,
        description="Processor event ID (evt_xxx)",
        examples=["evt_1ABC123DEF456"],
    )
    event_type: str = Field(
        ...,
        examples=["payment_intent.amount_capturable_updated"],
    )
    processed_at: datetime
    payload_hash: str = Field(..., description="SHA-256 hash of the raw payload")
    rental_id: str | None = None
    user_id: str | None = None
    processing_result: str = Field(
        default="processing",
        description="processing, success, skipped or error",
    )
    error_message: str | None = None
