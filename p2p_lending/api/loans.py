"""
Loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import get_actor_id, get_engine, http_error, parse_enum
from .schemas import LoanRequestModel
from ..engine import LendingEngine
from ..errors import AuthorizationError, LendingError
from ..interest import InterestType, RepaymentFrequency
from ..loans import LenderType


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def request_loan(
    request: LoanRequestModel,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Request a loan; business loans are offered to matching lenders"""
    lender_type = parse_enum(LenderType, request.lender_type, "lender_type")
    frequency = parse_enum(RepaymentFrequency, request.repayment_frequency, "repayment_frequency")
    interest_type = parse_enum(InterestType, request.interest_type, "interest_type")
    try:
        outcome = engine.request_loan(
            borrower_id=actor_id,
            amount=request.amount,
            total_installments=request.total_installments,
            lender_type=lender_type,
            repayment_frequency=frequency,
            currency=request.currency,
            interest_rate=request.interest_rate,
            interest_type=interest_type,
            invited_lender_id=request.invited_lender_id,
            purpose=request.purpose
        )
    except LendingError as e:
        raise http_error(e)

    return {
        "loan": outcome.loan.to_dict(),
        "offers": [offer.to_dict() for offer in outcome.offers],
        "eligibility": outcome.eligibility.to_dict(),
    }


@router.get("/{loan_id}")
async def get_loan(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get loan details"""
    try:
        return engine.loans.get_loan(loan_id).to_dict()
    except LendingError as e:
        raise http_error(e)


@router.get("/{loan_id}/schedule")
async def get_schedule(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get the loan's repayment schedule"""
    try:
        engine.loans.get_loan(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {"schedule": [entry.to_dict() for entry in engine.loans.get_schedule(loan_id)]}


@router.get("/{loan_id}/payments")
async def get_payments(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get payments recorded against the loan"""
    try:
        engine.loans.get_loan(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {"payments": [payment.to_dict() for payment in engine.ledger.payments_for_loan(loan_id)]}


@router.post("/{loan_id}/accept")
async def accept_direct_loan(
    loan_id: str,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Fund a personal loan request as the calling lender"""
    try:
        loan = engine.matching.accept_direct_loan(loan_id, actor_id)
    except LendingError as e:
        raise http_error(e)
    return {"loan": loan.to_dict(), "message": "Loan funded successfully"}


@router.post("/{loan_id}/default")
async def mark_defaulted(
    loan_id: str,
    actor_id: str = Depends(get_actor_id),
    engine: LendingEngine = Depends(get_engine)
):
    """Mark an active loan as defaulted (its lender only)"""
    try:
        loan = engine.loans.get_loan(loan_id)
        if actor_id not in (loan.lender_id, loan.business_lender_id):
            raise AuthorizationError("Only the loan's lender can mark it defaulted")
        result = engine.payments.mark_loan_defaulted(loan_id)
    except LendingError as e:
        raise http_error(e)
    return {
        "loan_id": result.loan_id,
        "defaulted": result.defaulted,
        "already_defaulted": result.already_defaulted,
        "vouchers_updated": result.vouchers_updated,
        "vouchers_locked": result.vouchers_locked,
    }
