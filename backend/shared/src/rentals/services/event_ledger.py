"""Dedup ledger for processor webhook events.

Each event ID is claimed with a single conditional put before any effect
runs, so two concurrent deliveries of the same event cannot both apply it.
The entry doubles as the audit record for the delivery.
"""

import datetime as dt
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from rentals.models import ProcessorWebhookEvent

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)

RESULT_PROCESSING = "processing"


class EventLedger:
    """Atomic insert-if-absent ledger keyed by processor event ID."""

    TABLE = "processor-webhook-events"
    # An unfinished claim older than this is treated as abandoned
    CLAIM_LEASE_SECONDS = 60

    def __init__(
        self,
        db: "DynamoDBService",
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.db = db
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    def claim(self, event_id: str, event_type: str, payload_hash: str) -> bool:
        """Claim an event for processing.

        Args:
            event_id: Processor event ID
            event_type: Event type
            payload_hash: SHA-256 hash of the raw payload

        Returns:
            True if this caller owns the event now, False if it was already
            processed (or is being processed by a live claim)
        """
        now = self._clock()
        item: dict[str, Any] = {
            "event_id": event_id,
            "event_type": event_type,
            "processed_at": now.isoformat(),
            "payload_hash": payload_hash,
            "processing_result": RESULT_PROCESSING,
            "claim_expires_at": int(now.timestamp()) + self.CLAIM_LEASE_SECONDS,
        }
        claimed = self.db.put_item(
            self.TABLE,
            item,
            condition_expression=(
                "attribute_not_exists(event_id) OR "
                "(processing_result = :processing AND claim_expires_at < :now)"
            ),
            expression_attribute_values={
                ":processing": RESULT_PROCESSING,
                ":now": int(now.timestamp()),
            },
        )
        if not claimed:
            logger.info("Event %s already claimed", event_id)
        return claimed

    def complete(
        self,
        event_id: str,
        processing_result: str,
        rental_id: str | None = None,
        user_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Record the outcome of a claimed event.

        Args:
            event_id: Processor event ID
            processing_result: success or skipped
            rental_id: Associated rental ID (if any)
            user_id: Associated member ID (if any)
            error_message: Why the event was skipped, if it was
        """
        values: dict[str, Any] = {
            ":result": processing_result,
            ":processed_at": self._clock().isoformat(),
        }
        set_parts = ["processing_result = :result", "processed_at = :processed_at"]
        if rental_id:
            values[":rental_id"] = rental_id
            set_parts.append("rental_id = :rental_id")
        if user_id:
            values[":user_id"] = user_id
            set_parts.append("user_id = :user_id")
        if error_message:
            values[":error_message"] = error_message
            set_parts.append("error_message = :error_message")

        self.db.update_item(
            self.TABLE,
            {"event_id": event_id},
            "SET " + ", ".join(set_parts) + " REMOVE claim_expires_at",
            values,
        )

    def release(self, event_id: str) -> None:
        """Drop a claim whose effect failed so a redelivery can retry it."""
        self.db.delete_item(self.TABLE, {"event_id": event_id})

    def get(self, event_id: str) -> ProcessorWebhookEvent | None:
        item = self.db.get_item(self.TABLE, {"event_id": event_id})
        if not item:
            return None
        return ProcessorWebhookEvent(
            event_id=item["event_id"],
            event_type=item["event_type"],
            processed_at=dt.datetime.fromisoformat(item["processed_at"]),
            payload_hash=item["payload_hash"],
            rental_id=item.get("rental_id"),
            user_id=item.get("user_id"),
            processing_result=item.get("processing_result", RESULT_PROCESSING),
            error_message=item.get("error_message"),
        )
