"""
Borrower endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_actor_id, get_engine, http_error, parse_datetime, parse_enum
from .schemas import CreateBorrowerRequest
from ..engine import LendingEngine
from ..errors import AuthorizationError, LendingError, ValidationError
from ..loans import LenderType
from ..money import round_money


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_borrower(request: CreateBorrowerRequest, engine: LendingEngine = Depends(get_engine)):
    """Create a borrower profile"""
    try:
        profile = engine.borrowers.create_profile(
            request.user_id,
            full_name=request.full_name,
            created_at=parse_datetime(request.created_at),
            kyc_verified=request.kyc_verified,
            selfie_verified=request.selfie_verified,
            phone_verified=request.phone_verified,
            bank_connected=request.bank_connected
        )
    except LendingError as e:
        raise http_error(e)
    return profile.to_dict()


@router.get("/{user_id}")
async def get_borrower(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get a borrower profile"""
    try:
        return engine.borrowers.get_profile(user_id).to_dict()
    except LendingError as e:
        raise http_error(e)


@router.get("/{user_id}/eligibility")
async def check_eligibility(
    user_id: str,
    lender_type: str = "business",
    amount: Optional[str] = None,
    engine: LendingEngine = Depends(get_engine)
):
    """Check whether the borrower can request a new loan"""
    lender = parse_enum(LenderType, lender_type, "lender_type")
    try:
        requested = None
        if amount is not None:
            try:
                requested = round_money(amount)
            except ValueError:
                raise ValidationError("Amount must be numeric", {"amount": amount})
        result = engine.eligibility.check_eligibility(user_id, lender, requested)
    except LendingError as e:
        raise http_error(e)
    return result.to_dict()


@router.get("/{user_id}/trust-score")
async def get_trust_score(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get the trust score with its component breakdown"""
    return engine.trust_scores.get_breakdown(user_id).to_dict()


@router.get("/{user_id}/trust-events")
async def get_trust_events(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get the trust event history"""
    return {"events": [event.to_dict() for event in engine.trust_scores.get_events(user_id)]}


@router.get("/{user_id}/loans")
async def get_borrower_loans(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """List the borrower's loans"""
    return {"loans": [loan.to_dict() for loan in engine.loans.loans_for_borrower(user_id)]}


@router.get("/{user_id}/notifications")
async def get_notifications(
    user_id: str,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """List notifications addressed to the calling user"""
    if actor_id != user_id:
        raise http_error(AuthorizationError("Notifications are only visible to their recipient"))
    return {"notifications": [intent.to_dict() for intent in engine.outbox.get_for_user(user_id)]}


@router.post("/{user_id}/clear-debt")
async def clear_debt(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """Record that a blocked borrower repaid their outstanding debt"""
    try:
        profile = engine.clear_borrower_debt(user_id)
    except LendingError as e:
        raise http_error(e)
    return profile.to_dict()
