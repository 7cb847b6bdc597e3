"""
Loan offer endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_actor_id, get_engine, http_error
from .schemas import CreateOffersRequest, OfferResponseRequest
from ..engine import LendingEngine
from ..errors import LendingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_offers(request: CreateOffersRequest, engine: LendingEngine = Depends(get_engine)):
    """Offer a pending business loan to the best-ranked lenders"""
    try:
        offers = engine.matching.create_offers(request.loan_id)
        loan = engine.loans.get_loan(request.loan_id)
    except LendingError as e:
        raise http_error(e)
    return {
        "loan_id": loan.id,
        "match_status": loan.match_status.value,
        "current_match_id": loan.current_match_id,
        "offers": [offer.to_dict() for offer in offers],
    }


@router.get("/loan/{loan_id}")
async def list_offers(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """List a loan's offers in rank order"""
    return {"offers": [offer.to_dict() for offer in engine.matching.matches_for_loan(loan_id)]}


@router.get("/{match_id}")
async def get_offer(match_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get an offer"""
    try:
        return engine.matching.get_match(match_id).to_dict()
    except LendingError as e:
        raise http_error(e)


@router.post("/{match_id}/respond")
async def respond_to_offer(
    match_id: str,
    request: OfferResponseRequest,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Accept or decline an offer as the offered lender"""
    try:
        response = engine.matching.respond_to_offer(
            match_id, request.action, actor_id=actor_id, reason=request.reason
        )
    except LendingError as e:
        raise http_error(e)
    return {
        "match_id": response.match_id,
        "loan_id": response.loan_id,
        "action": response.action.value,
        "status": response.status.value,
        "loan_status": response.loan_status.value,
        "next_match_id": response.next_match_id,
        "no_match": response.no_match,
    }
