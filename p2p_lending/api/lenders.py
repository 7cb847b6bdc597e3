"""
Lender preference and capital endpoints
"""

from fastapi import APIRouter, Depends

from .deps import get_actor_id, get_engine, http_error, parse_enum
from .schemas import DepositRequest, LenderPreferenceRequest, TierPolicyRequest
from ..engine import LendingEngine
from ..errors import AuthorizationError, LendingError, ValidationError
from ..interest import InterestType


router = APIRouter()


def _own_key(key: str, actor_id: str) -> None:
    """The caller may manage their own record and any business record they name"""
    if key.startswith("user:") and key != f"user:{actor_id}":
        raise AuthorizationError("Cannot manage another lender's preferences")


@router.put("/preferences")
async def set_preferences(
    request: LenderPreferenceRequest,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Create or update the caller's lending preferences"""
    interest_type = parse_enum(InterestType, request.interest_type, "interest_type")
    try:
        preference = engine.lenders.create_preference(
            user_id=None if request.business_id else actor_id,
            business_id=request.business_id,
            min_amount=request.min_amount,
            max_amount=request.max_amount,
            capital_pool=request.capital_pool,
            allow_first_time_borrowers=request.allow_first_time_borrowers,
            first_time_borrower_limit=request.first_time_borrower_limit,
            interest_rate=request.interest_rate,
            interest_type=interest_type,
            is_active=request.is_active
        )
    except ValueError as e:
        raise http_error(e if isinstance(e, LendingError) else ValidationError(str(e)))
    return _preference_view(preference)


@router.get("/preferences/{key}")
async def get_preferences(key: str, engine: LendingEngine = Depends(get_engine)):
    """Get a lender's preferences and capital account"""
    try:
        return _preference_view(engine.lenders.get_preference(key))
    except LendingError as e:
        raise http_error(e)


@router.post("/preferences/{key}/deposit")
async def deposit_capital(
    key: str,
    request: DepositRequest,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Add funds to a lender's capital pool"""
    try:
        _own_key(key, actor_id)
        preference = engine.lenders.deposit_capital(key, request.amount)
    except ValueError as e:
        raise http_error(e if isinstance(e, LendingError) else ValidationError(str(e)))
    return _preference_view(preference)


@router.put("/preferences/{key}/tier-policies")
async def set_tier_policy(
    key: str,
    request: TierPolicyRequest,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Set the rate a lender charges borrowers of one vouch tier"""
    try:
        _own_key(key, actor_id)
        engine.lenders.get_preference(key)
        policy = engine.lenders.set_tier_policy(
            key, request.tier_id, request.interest_rate, request.max_loan_amount
        )
    except ValueError as e:
        raise http_error(e if isinstance(e, LendingError) else ValidationError(str(e)))
    return policy.to_dict()


def _preference_view(preference) -> dict:
    view = preference.to_dict()
    view["available_capital"] = str(preference.available_capital)
    return view
