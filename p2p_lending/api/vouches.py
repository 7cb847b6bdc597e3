"""
Vouch endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_actor_id, get_engine, http_error, parse_enum
from .schemas import CreateVouchRequest
from ..engine import LendingEngine
from ..errors import LendingError
from ..vouching import VouchType


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_vouch(
    request: CreateVouchRequest,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Vouch for another user as the caller"""
    vouch_type = parse_enum(VouchType, request.vouch_type, "vouch_type")
    try:
        vouch = engine.vouching.create_vouch(
            actor_id,
            request.vouchee_id,
            vouch_type=vouch_type,
            relationship=request.relationship,
            known_years=request.known_years
        )
    except LendingError as e:
        raise http_error(e)
    return vouch.to_dict()


@router.delete("/{vouch_id}")
async def revoke_vouch(
    vouch_id: str,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Revoke a vouch the caller gave"""
    try:
        vouch = engine.vouching.revoke_vouch(vouch_id, actor_id)
    except LendingError as e:
        raise http_error(e)
    return vouch.to_dict()


@router.get("/received/{user_id}")
async def vouches_received(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """Active vouches for a user, with their vouch tier"""
    return {
        "trust_tier": engine.vouching.trust_tier_for(user_id),
        "vouches": [vouch.to_dict() for vouch in engine.vouching.active_vouches_for(user_id)],
    }


@router.get("/given/{user_id}")
async def vouches_given(user_id: str, engine: LendingEngine = Depends(get_engine)):
    """Vouches a user has given"""
    return {"vouches": [vouch.to_dict() for vouch in engine.vouching.vouches_given_by(user_id)]}
