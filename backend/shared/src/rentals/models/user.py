"""Member profile flags consulted by the access gate and the gateway."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import GateStep, SubscriptionTier, VerificationStatus


class UserProfile(BaseModel):
    """Payment-relevant slice of a member profile."""

    model_config = ConfigDict(strict=True)

    user_id: str
    email: str | None = None
    stripe_customer_id: str | None = Field(default=None, examples=["cus_ABC123"])
    stripe_subscription_id: str | None = Field(default=None, examples=["sub_ABC123"])
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_expires_at: datetime | None = None
    is_verified: bool = False
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    stripe_connect_account_id: str | None = Field(default=None, examples=["acct_ABC123"])
    payouts_enabled: bool = False

    def is_subscribed(self, now: datetime) -> bool:
        if self.subscription_tier == SubscriptionTier.FREE:
            return False
        return self.subscription_expires_at is None or self.subscription_expires_at > now

    @property
    def payout_account_linked(self) -> bool:
        return bool(self.stripe_connect_account_id) and self.payouts_enabled


class AccessStatus(BaseModel):
    """Result of an access gate check."""

    user_id: str
    subscribed: bool
    verified: bool
    payout_account_linked: bool
    next_step: GateStep | None = Field(
        default=None,
        description="First unmet requirement, or null when fully unlocked",
    )

    @property
    def unlocked(self) -> bool:
        return self.next_step is None
