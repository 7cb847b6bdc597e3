"""
Money-movement provider webhooks

Signature verification happens in the gateway before requests reach this
service.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import get_engine, http_error, parse_date, parse_datetime
from .schemas import TransferEvent
from ..engine import LendingEngine
from ..errors import LendingError


router = APIRouter()

SUCCEEDED = "transfer_succeeded"
FAILED = "transfer_failed"


@router.post("/transfers")
async def transfer_event(event: TransferEvent, engine: LendingEngine = Depends(get_engine)):
    """Apply a transfer outcome reported by the payment provider"""
    if event.event == FAILED:
        recorded = engine.payments.on_payment_failed(
            event.loan_id, event.borrower_id, event.payment_id, reason=event.reason
        )
        return {"received": True, "penalty_recorded": recorded}

    if event.event != SUCCEEDED:
        # Other provider events are acknowledged so they are not redelivered
        return {"received": True, "ignored": True}
    if not event.amount:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="amount is required")

    paid_date = parse_datetime(event.paid_date) if event.paid_date and "T" in event.paid_date \
        else parse_date(event.paid_date)
    try:
        result = engine.payments.on_payment_completed(
            loan_id=event.loan_id,
            borrower_id=event.borrower_id,
            payment_id=event.payment_id,
            amount=event.amount,
            due_date=parse_date(event.due_date),
            paid_date=paid_date,
            schedule_entry_id=event.schedule_entry_id
        )
    except LendingError as e:
        raise http_error(e)

    response = {"received": True}
    response.update(result.to_dict())
    return response
