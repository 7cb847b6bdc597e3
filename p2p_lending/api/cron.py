"""
Scheduler endpoints, called by the external cron trigger
"""

from fastapi import APIRouter, Depends

from .deps import get_engine, verify_cron_secret
from ..engine import LendingEngine


router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.post("/expire-offers")
async def expire_offers(engine: LendingEngine = Depends(get_engine)):
    """Expire overdue offers and move their loans to the next lender"""
    return engine.matching.expire_offers()


@router.post("/missed-payments")
async def sweep_missed_payments(engine: LendingEngine = Depends(get_engine)):
    """Penalize installments past due without payment"""
    return engine.payments.sweep_missed_payments()


@router.post("/deliver-notifications")
async def deliver_notifications(engine: LendingEngine = Depends(get_engine)):
    """Deliver pending notification intents"""
    return await engine.outbox.deliver_pending()
