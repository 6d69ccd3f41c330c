"""Progressive access gate: subscription, then verification, then payouts.

The gate owns no state. It reads profile flags on demand and reports the
first unmet step; the flags themselves are changed by processor webhooks.
"""

import datetime as dt
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from rentals.models import AccessGateRequired, AccessStatus, GateStep, UserProfile

if TYPE_CHECKING:
    from .user_store import UserStore

logger = logging.getLogger(__name__)

GATE_ORDER: tuple[GateStep, ...] = (
    GateStep.SUBSCRIPTION,
    GateStep.VERIFICATION,
    GateStep.CONNECT,
)


def evaluate(profile: UserProfile, now: dt.datetime) -> AccessStatus:
    """Compute gate flags and the first unmet step for a profile."""
    subscribed = profile.is_subscribed(now)
    verified = profile.is_verified
    linked = profile.payout_account_linked

    next_step: GateStep | None = None
    for step, passed in zip(GATE_ORDER, (subscribed, verified, linked)):
        if not passed:
            next_step = step
            break

    return AccessStatus(
        user_id=profile.user_id,
        subscribed=subscribed,
        verified=verified,
        payout_account_linked=linked,
        next_step=next_step,
    )


class AccessGate:
    """Checks a member's progress through the access gate."""

    def __init__(
        self,
        users: "UserStore",
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.users = users
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    def status(self, user_id: str) -> AccessStatus:
        return evaluate(self.users.get_or_default(user_id), self._clock())

    def require(self, user_id: str, through: GateStep) -> AccessStatus:
        """Require every gate step up to and including `through`.

        Args:
            user_id: Member to check
            through: Last step that must be complete

        Returns:
            The member's AccessStatus

        Raises:
            AccessGateRequired: With `next_step` in details when a required step is unmet
        """
        status = self.status(user_id)
        if status.next_step is not None and (
            GATE_ORDER.index(status.next_step) <= GATE_ORDER.index(through)
        ):
            logger.info(
                "Access gate blocked user %s at %s (requires %s)",
                user_id,
                status.next_step.value,
                through.value,
            )
            raise AccessGateRequired(
                details={"next_step": status.next_step.value, "required": through.value}
            )
        return status
