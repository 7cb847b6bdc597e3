"""
Shared fixtures for the lending engine test suite
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from p2p_lending.config import LendingConfig
from p2p_lending.engine import LendingEngine
from p2p_lending.storage import InMemoryStorage


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    """Engine configuration independent of the environment"""
    return LendingConfig(use_sqlite=False, cron_secret="", notification_webhook_url="")


@pytest.fixture
def engine(config):
    """Engine over in-memory storage"""
    return LendingEngine(storage=InMemoryStorage(), config=config)


@pytest.fixture
def make_borrower(engine):
    """Create borrower profiles with an account old enough to vouch"""
    def _make(user_id, full_name=None, **attributes):
        return engine.borrowers.create_profile(
            user_id,
            full_name=full_name or user_id.title(),
            created_at=T0 - timedelta(days=400),
            **attributes
        )
    return _make


@pytest.fixture
def make_lender(engine):
    """Create business lender preferences with a capital pool"""
    def _make(business_id, capital="5000", max_amount="2000", **kwargs):
        return engine.lenders.create_preference(
            business_id=business_id,
            min_amount=kwargs.pop("min_amount", Decimal("0")),
            max_amount=Decimal(max_amount),
            capital_pool=Decimal(capital),
            **kwargs
        )
    return _make


@pytest.fixture
def funded_loan(engine, make_borrower, make_lender):
    """Activate a $1000, 12%, 12-month business loan funded by lender "acme" """
    def _fund(borrower_id="borrower", amount="1000", installments=12, rate="12", capital="5000"):
        if not engine.borrowers.find_profile(borrower_id):
            make_borrower(borrower_id)
        if not engine.lenders.find_preference("business:acme"):
            make_lender("acme", capital=capital)
        outcome = engine.request_loan(
            borrower_id, Decimal(amount), installments, interest_rate=Decimal(rate), now=T0
        )
        engine.matching.respond_to_offer(outcome.offers[0].id, "accept", now=T0)
        return engine.loans.get_loan(outcome.loan.id)
    return _fund


@pytest.fixture
def pay_all(engine):
    """Pay every installment on its due date; returns the last result"""
    def _pay(loan, prefix="pay"):
        result = None
        for entry in engine.loans.get_schedule(loan.id):
            result = engine.payments.on_payment_completed(
                loan.id,
                loan.borrower_id,
                f"{prefix}-{entry.installment_number}",
                entry.amount,
                due_date=entry.due_date,
                paid_date=entry.due_date,
                schedule_entry_id=entry.id
            )
        return result
    return _pay
