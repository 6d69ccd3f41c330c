"""API models for the access gate endpoint."""

from pydantic import BaseModel

from rentals.models import AccessStatus, GateStep


class AccessStatusResponse(BaseModel):
    """Caller's progress through the access gate."""

    user_id: str
    subscribed: bool
    verified: bool
    payout_account_linked: bool
    next_step: GateStep | None = None
    unlocked: bool

    @classmethod
    def from_status(cls, status: AccessStatus) -> "AccessStatusResponse":
        return cls(
            user_id=status.user_id,
            subscribed=status.subscribed,
            verified=status.verified,
            payout_account_linked=status.payout_account_linked,
            next_step=status.next_step,
            unlocked=status.unlocked,
        )
