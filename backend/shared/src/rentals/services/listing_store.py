"""Listing availability and lending statistics."""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from rentals.models import Listing

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


class ListingStore:
    """Reads listings and updates the fields the rental lifecycle owns."""

    TABLE = "listings"

    def __init__(self, db: "DynamoDBService") -> None:
        self.db = db

    def get(self, listing_id: str) -> Listing | None:
        item = self.db.get_item(self.TABLE, {"listing_id": listing_id})
        return self._item_to_listing(item) if item else None

    def set_available(self, listing_id: str, available: bool) -> bool:
        """Reserve or re-open a listing.

        Returns:
            True if the listing exists and was updated
        """
        attrs = self.db.update_item(
            self.TABLE,
            {"listing_id": listing_id},
            "SET is_available = :available",
            {":available": available},
            condition_expression="attribute_exists(listing_id)",
        )
        if attrs is None:
            logger.warning("Listing %s not found when setting availability", listing_id)
        return attrs is not None

    def reserve(self, listing_id: str) -> bool:
        """Take an active, available listing off the market in one conditional write.

        Returns:
            False if the listing is missing, paused or already reserved
        """
        attrs = self.db.update_item(
            self.TABLE,
            {"listing_id": listing_id},
            "SET is_available = :unavailable",
            {":unavailable": False, ":available": True, ":active": "active"},
            expression_attribute_names={"#status": "status"},
            condition_expression=(
                "attribute_exists(listing_id)"
                " AND (attribute_not_exists(#status) OR #status = :active)"
                " AND (attribute_not_exists(is_available) OR is_available = :available)"
            ),
        )
        return attrs is not None

    def record_return(self, listing_id: str, payout: int) -> bool:
        """Re-open a listing after a return and add to its lending stats.

        Args:
            listing_id: Listing that came back
            payout: Lender payout for the rental, in cents

        Returns:
            True if the listing exists and was updated
        """
        attrs = self.db.update_item(
            self.TABLE,
            {"listing_id": listing_id},
            "SET is_available = :available ADD times_borrowed :one, total_earnings :payout",
            {":available": True, ":one": 1, ":payout": payout},
            condition_expression="attribute_exists(listing_id)",
        )
        if attrs is None:
            logger.warning("Listing %s not found when recording return", listing_id)
        return attrs is not None

    def _item_to_listing(self, item: dict[str, Any]) -> Listing:
        """Convert DynamoDB item to Listing model."""
        return Listing(
            listing_id=item["listing_id"],
            owner_id=item["owner_id"],
            title=item.get("title", ""),
            status=item.get("status", "active"),
            is_available=bool(item.get("is_available", True)),
            price_per_day=Decimal(str(item.get("price_per_day", 0))),
            deposit_amount=Decimal(str(item.get("deposit_amount", 0))),
            late_fee_per_day=Decimal(str(item.get("late_fee_per_day", 0))),
            min_duration_days=(
                int(item["min_duration_days"]) if item.get("min_duration_days") else None
            ),
            max_duration_days=(
                int(item["max_duration_days"]) if item.get("max_duration_days") else None
            ),
            times_borrowed=int(item.get("times_borrowed", 0)),
            total_earnings=int(item.get("total_earnings", 0)),
        )
