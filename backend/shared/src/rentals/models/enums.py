"""Enumeration types for rental transaction models."""

from enum import Enum


class RentalStatus(str, Enum):
    """Fulfillment status of a rental transaction."""

    REQUESTED = "requested"
    APPROVED = "approved"
    PAID = "paid"
    PICKED_UP = "picked_up"
    RETURNED = "returned"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RentalStatus.RETURNED, RentalStatus.CANCELLED)


class PaymentStatus(str, Enum):
    """Payment progress, tracked independently of fulfillment."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    COMPLETED = "completed"
    DAMAGE_CLAIMED = "damage_claimed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemCondition(str, Enum):
    """Condition of a borrowed item, best first."""

    NEW = "new"
    LIKE_NEW = "like_new"
    GOOD = "good"
    WORN = "worn"
    DAMAGED = "damaged"

    @property
    def rank(self) -> int:
        """Ordinal position; a higher rank is a worse condition."""
        return list(ItemCondition).index(self)

    def is_worse_than(self, other: "ItemCondition") -> bool:
        return self.rank > other.rank


class GateStep(str, Enum):
    """Progressive access gate steps, in unlock order."""

    SUBSCRIPTION = "subscription"
    VERIFICATION = "verification"
    CONNECT = "connect"


class SubscriptionTier(str, Enum):
    """Membership tiers; anything but FREE counts as subscribed."""

    FREE = "free"
    PLUS = "plus"
    NEIGHBORHOOD = "neighborhood"
    TOWN = "town"


class VerificationStatus(str, Enum):
    """Identity verification progress as reported by the processor."""

    UNVERIFIED = "unverified"
    REQUIRES_INPUT = "requires_input"
    VERIFIED = "verified"
