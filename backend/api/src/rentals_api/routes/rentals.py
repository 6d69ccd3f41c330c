"""Rental transition endpoints.

Provides REST endpoints for the rental lifecycle:
- Borrower: request, cancel, confirm-payment
- Lender: approve, decline, pickup, return, damage-claim, late-fee
- Either party: payment-status

**All endpoints require a bearer token.** Transitions on an existing rental
answer 404 both when the rental does not exist and when the caller lacks the
role (or the rental is not in a state that allows the transition).
"""

from fastapi import APIRouter, Depends
from starlette.status import HTTP_201_CREATED

from rentals.models import GateStep, RentalTransaction
from rentals.services.access_gate import AccessGate
from rentals.services.rental_engine import RentalEngine
from rentals_api.dependencies import get_access_gate, get_rental_engine
from rentals_api.models.rentals import (
    ApproveBody,
    DamageClaimBody,
    DeclineBody,
    LateFeeResponse,
    PaymentConfirmationResponse,
    PaymentStatusResponse,
    PickupBody,
    RentalRequestBody,
    RentalResponse,
    RentalView,
    ReturnBody,
)
from rentals_api.security import get_current_user_id

router = APIRouter(tags=["rentals"])

COMMON_RESPONSES = {
    401: {"description": "Bearer token missing or invalid"},
    404: {"description": "Rental not found, not yours, or not in a state that allows this"},
    409: {"description": "Rental is being modified by another request; retry"},
}

GATEWAY_RESPONSES = {
    502: {"description": "Payment processor rejected the call; rental unchanged"},
    504: {"description": "Payment processor timed out; retry is safe"},
}


async def require_borrower_access(
    user_id: str = Depends(get_current_user_id),
    gate: AccessGate = Depends(get_access_gate),
) -> str:
    """Borrowing requires an active subscription and a verified identity."""
    gate.require(user_id, GateStep.VERIFICATION)
    return user_id


async def require_lender_access(
    user_id: str = Depends(get_current_user_id),
    gate: AccessGate = Depends(get_access_gate),
) -> str:
    """Approving a rental also requires a payout account that can receive transfers."""
    gate.require(user_id, GateStep.CONNECT)
    return user_id


def _rental_response(rental: RentalTransaction) -> RentalResponse:
    return RentalResponse(rental=RentalView.from_rental(rental))


@router.post(
    "/rentals/request",
    summary="Request to borrow a listing",
    description="""
Create a rental request for a listing.

**Requires bearer token and access gate up to identity verification.**

Fees are computed once here and stored on the rental:
- rental_fee = daily rate x days (partial days round up)
- platform_fee = 2% of rental_fee, rounded half up
- lender_payout = rental_fee - platform_fee

No money moves until the lender approves.
""",
    response_model=RentalResponse,
    status_code=HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid dates, duration, amount, own listing, or listing unavailable"},
        401: {"description": "Bearer token missing or invalid"},
        403: {"description": "Access gate step incomplete; see details.next_step"},
    },
)
async def request_rental(
    body: RentalRequestBody,
    borrower_id: str = Depends(require_borrower_access),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    rental = engine.request(
        borrower_id,
        body.listing_id,
        body.start_date,
        body.end_date,
        body.message,
    )
    return _rental_response(rental)


@router.post(
    "/rentals/{rental_id}/approve",
    summary="Approve a rental request",
    description="""
Approve a requested rental and place an authorization hold on the borrower's
card for rental fee plus deposit (manual capture).

**Requires bearer token, lender role, and the full access gate.**

The rental moves to `paid` once the processor confirms the hold via webhook.
""",
    response_model=RentalResponse,
    responses={
        **COMMON_RESPONSES,
        **GATEWAY_RESPONSES,
        400: {"description": "Listing no longer available"},
        403: {"description": "Access gate step incomplete; see details.next_step"},
    },
)
async def approve_rental(
    rental_id: str,
    body: ApproveBody | None = None,
    lender_id: str = Depends(require_lender_access),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    response = body.response if body else None
    return _rental_response(engine.approve(lender_id, rental_id, response))


@router.post(
    "/rentals/{rental_id}/decline",
    summary="Decline a rental request",
    response_model=RentalResponse,
    responses={**COMMON_RESPONSES, **GATEWAY_RESPONSES},
)
async def decline_rental(
    rental_id: str,
    body: DeclineBody | None = None,
    lender_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    reason = body.reason if body else None
    return _rental_response(engine.decline(lender_id, rental_id, reason))


@router.post(
    "/rentals/{rental_id}/cancel",
    summary="Cancel a rental as the borrower",
    description="""
Cancel a rental before pickup. Any hold is released; a captured payment is
refunded in full. The listing re-opens if it was reserved.
""",
    response_model=RentalResponse,
    responses={**COMMON_RESPONSES, **GATEWAY_RESPONSES},
)
async def cancel_rental(
    rental_id: str,
    borrower_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    return _rental_response(engine.cancel(borrower_id, rental_id))


@router.post(
    "/rentals/{rental_id}/confirm-payment",
    summary="Get credentials to complete the authorization",
    description="""
Inspect the live authorization. If the processor needs the borrower to attach
or confirm a payment method, returns the client secret, an ephemeral key and
the customer ID. Does not change the rental; success arrives via webhook.
""",
    response_model=PaymentConfirmationResponse,
    responses={**COMMON_RESPONSES, **GATEWAY_RESPONSES},
)
async def confirm_payment(
    rental_id: str,
    borrower_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> PaymentConfirmationResponse:
    return PaymentConfirmationResponse(**engine.confirm_payment(borrower_id, rental_id))


@router.post(
    "/rentals/{rental_id}/pickup",
    summary="Record pickup and capture payment",
    response_model=RentalResponse,
    responses={**COMMON_RESPONSES, **GATEWAY_RESPONSES},
)
async def pickup_rental(
    rental_id: str,
    body: PickupBody | None = None,
    lender_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    body = body or PickupBody()
    return _rental_response(engine.pickup(lender_id, rental_id, body.condition))


@router.post(
    "/rentals/{rental_id}/return",
    summary="Record return and settle",
    description="""
Record the item's condition at return.

- Same or better than at pickup: the deposit is refunded.
- Worse than at pickup: the deposit stays held for a damage claim.

The lender payout is transferred in both cases.
""",
    response_model=RentalResponse,
    responses={**COMMON_RESPONSES, **GATEWAY_RESPONSES},
)
async def return_rental(
    rental_id: str,
    body: ReturnBody,
    lender_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    return _rental_response(
        engine.return_item(lender_id, rental_id, body.condition, body.notes)
    )


@router.post(
    "/rentals/{rental_id}/damage-claim",
    summary="Claim part of the deposit for damage",
    description="""
Keep up to the full deposit and refund the remainder to the borrower.
Amounts above the deposit are clamped. Submitting again replaces the claim.
""",
    response_model=RentalResponse,
    responses={**COMMON_RESPONSES, **GATEWAY_RESPONSES},
)
async def damage_claim(
    rental_id: str,
    body: DamageClaimBody,
    lender_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> RentalResponse:
    rental = engine.damage_claim(
        lender_id, rental_id, body.amount_cents, body.notes, body.evidence_urls
    )
    return _rental_response(rental)


@router.post(
    "/rentals/{rental_id}/late-fee",
    summary="Charge a late fee for an overdue rental",
    response_model=LateFeeResponse,
    responses={
        **COMMON_RESPONSES,
        **GATEWAY_RESPONSES,
        400: {"description": "Rental is not overdue, or the listing has no late fee"},
    },
)
async def charge_late_fee(
    rental_id: str,
    lender_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> LateFeeResponse:
    return LateFeeResponse(**engine.late_fee(lender_id, rental_id))


@router.get(
    "/rentals/{rental_id}/payment-status",
    summary="Get payment summary for a rental",
    response_model=PaymentStatusResponse,
    responses={
        401: {"description": "Bearer token missing or invalid"},
        404: {"description": "Rental not found or caller is not a party to it"},
    },
)
async def get_payment_status(
    rental_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: RentalEngine = Depends(get_rental_engine),
) -> PaymentStatusResponse:
    return PaymentStatusResponse(**engine.payment_status(user_id, rental_id))
