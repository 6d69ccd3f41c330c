"""Member profile store for payment and access-gate flags."""

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any

from rentals.models import SubscriptionTier, UserProfile, VerificationStatus

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


class UserStore:
    """Reads profiles and applies processor-driven flag changes."""

    TABLE = "users"
    CUSTOMER_INDEX = "stripe_customer_id-index"
    SUBSCRIPTION_INDEX = "stripe_subscription_id-index"
    CONNECT_ACCOUNT_INDEX = "stripe_connect_account_id-index"

    def __init__(self, db: "DynamoDBService") -> None:
        self.db = db

    def get(self, user_id: str) -> UserProfile | None:
        item = self.db.get_item(self.TABLE, {"user_id": user_id})
        return self._item_to_profile(item) if item else None

    def get_or_default(self, user_id: str) -> UserProfile:
        """Get a profile, or an empty one with every gate flag unset."""
        return self.get(user_id) or UserProfile(user_id=user_id)

    def _find_one(self, index_name: str, attribute: str, value: str) -> UserProfile | None:
        items = self.db.query_by_gsi(self.TABLE, index_name, attribute, value)
        return self._item_to_profile(items[0]) if items else None

    def find_by_customer_id(self, customer_id: str) -> UserProfile | None:
        return self._find_one(self.CUSTOMER_INDEX, "stripe_customer_id", customer_id)

    def find_by_subscription_id(self, subscription_id: str) -> UserProfile | None:
        return self._find_one(self.SUBSCRIPTION_INDEX, "stripe_subscription_id", subscription_id)

    def find_by_connect_account_id(self, account_id: str) -> UserProfile | None:
        return self._find_one(self.CONNECT_ACCOUNT_INDEX, "stripe_connect_account_id", account_id)

    def _update(
        self,
        user_id: str,
        update_expression: str,
        values: dict[str, Any],
        names: dict[str, str] | None = None,
    ) -> bool:
        attrs = self.db.update_item(
            self.TABLE,
            {"user_id": user_id},
            update_expression,
            values,
            expression_attribute_names=names,
            condition_expression="attribute_exists(user_id)",
        )
        if attrs is None:
            logger.warning("User %s not found for profile update", user_id)
        return attrs is not None

    def set_customer_id(self, user_id: str, customer_id: str) -> bool:
        return self._update(
            user_id,
            "SET stripe_customer_id = :customer_id",
            {":customer_id": customer_id},
        )

    def activate_subscription(self, user_id: str, tier: SubscriptionTier) -> bool:
        """Mark a subscription paid: set the tier and clear any expiry."""
        return self._update(
            user_id,
            "SET subscription_tier = :tier REMOVE subscription_expires_at",
            {":tier": tier.value},
        )

    def set_subscription_expiry(self, user_id: str, expires_at: dt.datetime | None) -> bool:
        """Schedule (or, with None, clear) the end of a cancelled subscription."""
        if expires_at is None:
            # update_item needs at least one value; keep the tier as is
            return self._update(
                user_id,
                "SET subscription_tier = if_not_exists(subscription_tier, :free) "
                "REMOVE subscription_expires_at",
                {":free": SubscriptionTier.FREE.value},
            )
        return self._update(
            user_id,
            "SET subscription_expires_at = :expires_at",
            {":expires_at": expires_at.isoformat()},
        )

    def deactivate_subscription(self, user_id: str) -> bool:
        """Reset to the free tier and drop the subscription reference."""
        return self._update(
            user_id,
            "SET subscription_tier = :free REMOVE stripe_subscription_id, subscription_expires_at",
            {":free": SubscriptionTier.FREE.value},
        )

    def set_verification(self, user_id: str, status: VerificationStatus) -> bool:
        return self._update(
            user_id,
            "SET verification_status = :status, is_verified = :verified",
            {
                ":status": status.value,
                ":verified": status == VerificationStatus.VERIFIED,
            },
        )

    def set_payouts_enabled(self, user_id: str, enabled: bool) -> bool:
        return self._update(
            user_id,
            "SET payouts_enabled = :enabled",
            {":enabled": enabled},
        )

    def _item_to_profile(self, item: dict[str, Any]) -> UserProfile:
        """Convert DynamoDB item to UserProfile model."""
        return UserProfile(
            user_id=item["user_id"],
            email=item.get("email"),
            stripe_customer_id=item.get("stripe_customer_id"),
            stripe_subscription_id=item.get("stripe_subscription_id"),
            subscription_tier=SubscriptionTier(item.get("subscription_tier", "free")),
            subscription_expires_at=(
                dt.datetime.fromisoformat(item["subscription_expires_at"])
                if item.get("subscription_expires_at")
                else None
            ),
            is_verified=bool(item.get("is_verified", False)),
            verification_status=VerificationStatus(
                item.get("verification_status", "unverified")
            ),
            stripe_connect_account_id=item.get("stripe_connect_account_id"),
            payouts_enabled=bool(item.get("payouts_enabled", False)),
        )
