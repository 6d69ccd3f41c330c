"""Durable store for rental transactions.

Rows live in the `rentals` table keyed by `rental_id`. Every save is
conditional on the row version, and transitions run under a short lease lock
held on the row itself (`lock_owner` / `lock_expires_at`), so operations on the
same rental never interleave across workers.
"""

import datetime as dt
import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from boto3.dynamodb.conditions import Attr, Key

from rentals.models import (
    ConcurrentModification,
    ItemCondition,
    NotFoundOrForbidden,
    PaymentStatus,
    RentalStatus,
    RentalTransaction,
)

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]

# Attributes owned by the lock, never written by save()
LOCK_ATTRIBUTES = ("lock_owner", "lock_expires_at")

_DATETIME_FIELDS = (
    "requested_start_date",
    "requested_end_date",
    "created_at",
    "updated_at",
    "approved_at",
    "picked_up_at",
    "returned_at",
    "cancelled_at",
)
_INT_FIELDS = (
    "rental_days",
    "daily_rate",
    "rental_fee",
    "deposit_amount",
    "late_fee_per_day",
    "platform_fee",
    "lender_payout",
    "deposit_refunded",
    "late_fee_amount",
    "version",
)


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class RentalStore:
    """Repository for RentalTransaction rows."""

    TABLE = "rentals"
    LOCK_LEASE_SECONDS = 30

    def __init__(self, db: "DynamoDBService", clock: Clock | None = None) -> None:
        """Initialize the store.

        Args:
            db: DynamoDB service instance
            clock: Returns the current UTC time (injectable for tests)
        """
        self.db = db
        self._clock = clock or utc_now

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, rental_id: str) -> RentalTransaction | None:
        """Get a rental by ID with no role scoping (internal use only)."""
        item = self.db.get_item(self.TABLE, {"rental_id": rental_id})
        return self._item_to_rental(item) if item else None

    def _get_scoped(self, rental_id: str, role_filter: Any) -> RentalTransaction:
        items = self.db.query(
            self.TABLE,
            Key("rental_id").eq(rental_id),
            filter_expression=role_filter,
            consistent_read=True,
        )
        if not items:
            raise NotFoundOrForbidden(details={"rental_id": rental_id})
        return self._item_to_rental(items[0])

    def get_for_lender(self, rental_id: str, lender_id: str) -> RentalTransaction:
        """Get a rental where the caller is the lender.

        A missing rental and a caller who is not its lender are the same
        outcome: one query, filtered by lender_id.

        Raises:
            NotFoundOrForbidden: If no rental matches both keys
        """
        return self._get_scoped(rental_id, Attr("lender_id").eq(lender_id))

    def get_for_borrower(self, rental_id: str, borrower_id: str) -> RentalTransaction:
        """Get a rental where the caller is the borrower.

        Raises:
            NotFoundOrForbidden: If no rental matches both keys
        """
        return self._get_scoped(rental_id, Attr("borrower_id").eq(borrower_id))

    def get_for_party(self, rental_id: str, user_id: str) -> RentalTransaction:
        """Get a rental where the caller is either party.

        Raises:
            NotFoundOrForbidden: If the caller is neither borrower nor lender
        """
        return self._get_scoped(
            rental_id,
            Attr("lender_id").eq(user_id) | Attr("borrower_id").eq(user_id),
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def create(self, rental: RentalTransaction) -> RentalTransaction:
        """Insert a new rental.

        Raises:
            ConcurrentModification: If a rental with this ID already exists
        """
        created = self.db.put_item(
            self.TABLE,
            self._rental_to_item(rental),
            condition_expression="attribute_not_exists(rental_id)",
        )
        if not created:
            raise ConcurrentModification(details={"rental_id": rental.rental_id})
        return rental

    def save(self, rental: RentalTransaction) -> RentalTransaction:
        """Persist a changed rental if nobody else changed it first.

        The write is conditional on the stored version matching
        `rental.version`; on success the version is bumped.

        Args:
            rental: Rental carrying the version it was read at

        Returns:
            The saved rental with its new version and updated_at

        Raises:
            ConcurrentModification: If the stored version differs
        """
        saved = rental.model_copy(
            update={"version": rental.version + 1, "updated_at": self._clock()}
        )
        item = self._rental_to_item(saved)
        item.pop("rental_id")

        names: dict[str, str] = {}
        values: dict[str, Any] = {":expected_version": rental.version}
        set_parts: list[str] = []
        remove_parts: list[str] = []

        for index, field in enumerate(RentalTransaction.model_fields):
            if field == "rental_id":
                continue
            placeholder = f"#f{index}"
            names[placeholder] = field
            if field in item:
                values[f":v{index}"] = item[field]
                set_parts.append(f"{placeholder} = :v{index}")
            else:
                remove_parts.append(placeholder)

        update_expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            update_expression += " REMOVE " + ", ".join(remove_parts)
        names["#version"] = "version"

        attrs = self.db.update_item(
            self.TABLE,
            {"rental_id": rental.rental_id},
            update_expression,
            values,
            expression_attribute_names=names,
            condition_expression="#version = :expected_version",
        )
        if attrs is None:
            logger.warning(
                "Version conflict saving rental %s at version %d",
                rental.rental_id,
                rental.version,
            )
            raise ConcurrentModification(details={"rental_id": rental.rental_id})
        return saved

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def locked(self, rental_id: str) -> Iterator[RentalTransaction]:
        """Hold the per-rental lease lock for the duration of the block.

        Yields the rental as read when the lock was taken. The lease expires on
        its own after LOCK_LEASE_SECONDS if the holder dies.

        Raises:
            ConcurrentModification: If another holder has a live lease
        """
        owner = uuid.uuid4().hex
        now = int(self._clock().timestamp())
        attrs = self.db.update_item(
            self.TABLE,
            {"rental_id": rental_id},
            "SET lock_owner = :owner, lock_expires_at = :expires",
            {
                ":owner": owner,
                ":expires": now + self.LOCK_LEASE_SECONDS,
                ":now": now,
            },
            condition_expression=(
                "attribute_exists(rental_id) AND "
                "(attribute_not_exists(lock_owner) OR lock_expires_at < :now)"
            ),
        )
        if attrs is None:
            logger.info("Rental %s is locked by another request", rental_id)
            raise ConcurrentModification(details={"rental_id": rental_id})

        try:
            yield self._item_to_rental(attrs)
        finally:
            self.db.update_item(
                self.TABLE,
                {"rental_id": rental_id},
                "REMOVE lock_owner, lock_expires_at",
                {":owner": owner},
                condition_expression="lock_owner = :owner",
            )

    # =========================================================================
    # Item conversion
    # =========================================================================

    def _rental_to_item(self, rental: RentalTransaction) -> dict[str, Any]:
        """Convert RentalTransaction model to DynamoDB item (None fields omitted)."""
        item: dict[str, Any] = {}
        for field, value in rental.model_dump().items():
            if value is None:
                continue
            if isinstance(value, dt.datetime):
                item[field] = value.isoformat()
            elif isinstance(value, (RentalStatus, PaymentStatus, ItemCondition)):
                item[field] = value.value
            else:
                item[field] = value
        return item

    def _item_to_rental(self, item: dict[str, Any]) -> RentalTransaction:
        """Convert DynamoDB item to RentalTransaction model."""
        data = {k: v for k, v in item.items() if k not in LOCK_ATTRIBUTES}
        for field in _DATETIME_FIELDS:
            if data.get(field):
                data[field] = dt.datetime.fromisoformat(data[field])
        for field in _INT_FIELDS:
            if field in data:
                data[field] = int(data[field])
        if data.get("damage_claim_amount") is not None:
            data["damage_claim_amount"] = int(data["damage_claim_amount"])
        data["platform_fee_rate"] = Decimal(str(data["platform_fee_rate"]))
        data["status"] = RentalStatus(data["status"])
        data["payment_status"] = PaymentStatus(data["payment_status"])
        for field in ("condition_at_pickup", "condition_at_return"):
            if data.get(field):
                data[field] = ItemCondition(data[field])
        data["damage_evidence_urls"] = list(data.get("damage_evidence_urls", []))
        return RentalTransaction(**data)
