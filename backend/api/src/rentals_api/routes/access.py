"""Access gate status endpoint."""

from fastapi import APIRouter, Depends

from rentals.services.access_gate import AccessGate
from rentals_api.dependencies import get_access_gate
from rentals_api.models.access import AccessStatusResponse
from rentals_api.security import get_current_user_id

router = APIRouter(tags=["access"])


@router.get(
    "/access/status",
    summary="Get access gate progress",
    description="""
Returns the caller's subscription, verification and payout-account flags and
the first unmet step (`subscription`, `verification`, `connect`, or null when
fully unlocked).
""",
    response_model=AccessStatusResponse,
    responses={401: {"description": "Bearer token missing or invalid"}},
)
async def get_access_status(
    user_id: str = Depends(get_current_user_id),
    gate: AccessGate = Depends(get_access_gate),
) -> AccessStatusResponse:
    return AccessStatusResponse.from_status(gate.status(user_id))
