"""
Test suite for payment completion, failures, missed payments and defaults
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from p2p_lending.borrowers import BusinessTrustStatus
from p2p_lending.errors import AuthorizationError, ConflictError
from p2p_lending.loans import LoanStatus, ScheduleStatus, LenderType
from p2p_lending.payments import classify_payment_timing
from p2p_lending.trust_score import TrustEventType
from p2p_lending.vouching import VouchType


class TestPaymentTiming:
    """Test early/on-time/late classification"""

    @pytest.mark.parametrize("paid,timing,days", [
        (date(2024, 4, 7), "early", -3),
        (date(2024, 4, 8), "on_time", -2),
        (date(2024, 4, 10), "on_time", 0),
        (date(2024, 4, 11), "late", 1),
        (date(2024, 5, 15), "late", 35),
    ])
    def test_classification(self, paid, timing, days):
        """Test the early window is more than two days before due"""
        assert classify_payment_timing(date(2024, 4, 10), paid) == (timing, days)

    def test_missing_due_date_counts_as_on_time(self):
        """Test payments without a due date are on time"""
        assert classify_payment_timing(None, date(2024, 4, 10)) == ("on_time", 0)


class TestPaymentCompletion:
    """Test on_payment_completed"""

    def test_payment_applied_once(self, engine, funded_loan):
        """Test replaying a payment records one payment and one trust event"""
        loan = funded_loan()
        entry = engine.loans.get_schedule(loan.id)[0]

        first = engine.payments.on_payment_completed(
            loan.id, "borrower", "pay-1", entry.amount, paid_date=entry.due_date
        )
        second = engine.payments.on_payment_completed(
            loan.id, "borrower", "pay-1", entry.amount, paid_date=entry.due_date
        )

        assert first.duplicate is False
        assert first.trust_score_updated is True
        assert first.timing == "on_time"
        assert second.duplicate is True
        assert second.trust_score_updated is False

        loan = engine.loans.get_loan(loan.id)
        assert loan.amount_paid == Decimal("93.33")
        assert loan.amount_remaining == loan.total_amount - loan.amount_paid
        assert len(engine.ledger.payments_for_loan(loan.id)) == 1
        assert engine.ledger.get_payment("pay-1").schedule_entry_id == entry.id
        payment_events = [
            e for e in engine.trust_scores.get_events("borrower")
            if e.event_type == TrustEventType.PAYMENT_ONTIME
        ]
        assert len(payment_events) == 1
        assert engine.borrowers.get_profile("borrower").total_payments_made == 1

    def test_payment_id_reused_on_another_loan(self, engine, funded_loan):
        """Test a payment id applied to one loan cannot be replayed against another"""
        loan_a = funded_loan()
        loan_b = engine.loans.create_loan_request(
            "borrower", Decimal("100"), 2, lender_type=LenderType.PERSONAL
        )
        engine.matching.accept_direct_loan(loan_b.id, "friend")
        engine.payments.on_payment_completed(loan_a.id, "borrower", "a-1", Decimal("93.33"))

        with pytest.raises(ConflictError) as exc_info:
            engine.payments.on_payment_completed(loan_b.id, "borrower", "a-1", Decimal("50"))

        assert exc_info.value.current_state["loan_id"] == loan_a.id
        assert engine.loans.get_loan(loan_b.id).amount_paid == Decimal("0")
        assert engine.trust_scores.find_payment_timing_event("borrower", loan_b.id, "a-1") is None
        assert engine.borrowers.get_profile("borrower").total_payments_made == 1

    def test_due_date_defaults_to_installment(self, engine, funded_loan):
        """Test a late payment is measured against the installment it settles"""
        loan = funded_loan()
        entry = engine.loans.get_schedule(loan.id)[0]

        result = engine.payments.on_payment_completed(
            loan.id, "borrower", "pay-late", entry.amount,
            paid_date=entry.due_date + timedelta(days=10)
        )

        assert result.timing == "late"
        assert result.days_from_due == 10
        event = engine.trust_scores.find_payment_timing_event("borrower", loan.id, "pay-late")
        assert event.score_impact == -5
        assert engine.loans.get_schedule_entry(entry.id).is_paid

    def test_skip_user_stats(self, engine, funded_loan):
        """Test callers that already counted the payment can skip the counters"""
        loan = funded_loan()

        engine.payments.on_payment_completed(
            loan.id, "borrower", "pay-1", Decimal("93.33"), skip_user_stats=True
        )

        assert engine.borrowers.get_profile("borrower").total_payments_made == 0

    def test_wrong_borrower(self, engine, funded_loan, make_borrower):
        """Test only the loan's borrower can pay through this path"""
        loan = funded_loan()
        make_borrower("mallory")

        with pytest.raises(AuthorizationError):
            engine.payments.on_payment_completed(loan.id, "mallory", "pay-x", Decimal("10"))

    def test_pending_loan_rejects_payment(self, engine, make_borrower, make_lender):
        """Test payments need an active loan"""
        make_borrower("borrower")
        make_lender("acme")
        outcome = engine.request_loan("borrower", Decimal("500"), 6)

        with pytest.raises(ConflictError):
            engine.payments.on_payment_completed(outcome.loan.id, "borrower", "pay-x", Decimal("10"))

    def test_full_repayment_completes_loan(self, engine, funded_loan, pay_all):
        """Test paying every installment completes the loan and returns capital with interest"""
        loan = funded_loan()
        assert engine.lenders.get_preference("business:acme").capital_reserved == Decimal("1000.00")

        result = pay_all(loan)

        assert result.loan_completed is True
        assert result.errors == []
        loan = engine.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.amount_paid == Decimal("1120.00")
        assert loan.amount_remaining == Decimal("0.00")

        preference = engine.lenders.get_preference("business:acme")
        assert preference.capital_pool == Decimal("5120.00")
        assert preference.capital_reserved == Decimal("0.00")
        assert preference.total_interest_earned == Decimal("120.00")

        profile = engine.borrowers.get_profile("borrower")
        assert profile.total_loans_completed == 1
        assert profile.payments_on_time == 12
        completion = engine.trust_scores.find_completion_event("borrower", loan.id)
        assert completion.event_type == TrustEventType.FIRST_LOAN_COMPLETED
        assert result.new_trust_score == engine.trust_scores.get_score("borrower")
        relationship = engine.business_trust.get("borrower", "acme")
        assert relationship.status == BusinessTrustStatus.BUILDING
        assert (relationship.loan_count, relationship.completed_loan_count) == (1, 1)

    def test_completion_replay_is_harmless(self, engine, funded_loan, pay_all):
        """Test replaying the final payment repeats no completion step"""
        loan = funded_loan()
        pay_all(loan)
        last = engine.loans.get_schedule(loan.id)[-1]

        replay = engine.payments.on_payment_completed(
            loan.id, "borrower", "pay-12", last.amount, paid_date=last.due_date
        )

        assert replay.duplicate is True
        assert replay.loan_completed is False
        assert engine.lenders.get_preference("business:acme").capital_pool == Decimal("5120.00")
        assert engine.borrowers.get_profile("borrower").total_loans_completed == 1
        completions = [
            e for e in engine.trust_scores.get_events("borrower")
            if e.event_type in (TrustEventType.LOAN_COMPLETED, TrustEventType.FIRST_LOAN_COMPLETED)
        ]
        assert len(completions) == 1

    def test_completion_rewards_voucher(self, engine, make_borrower, funded_loan, pay_all):
        """Test the voucher's counters move from active to completed"""
        make_borrower("borrower")
        make_borrower("voucher")
        vouch = engine.vouching.create_vouch("voucher", "borrower", VouchType.FAMILY, known_years=2)
        loan = funded_loan()
        assert engine.vouching.get_vouch(vouch.id).loans_active == 1

        pay_all(loan)

        vouch = engine.vouching.get_vouch(vouch.id)
        assert vouch.loans_active == 0
        assert vouch.loans_completed == 1
        assert vouch.ontime_payments == 12
        given = [e for e in engine.trust_scores.get_events("voucher") if e.event_type == TrustEventType.VOUCH_GIVEN]
        assert len(given) == 1


class TestFailedAndMissedPayments:
    """Test failure and overdue penalties"""

    def test_failed_payment_penalized_once(self, engine, funded_loan):
        """Test a failed transfer costs the configured penalty once"""
        loan = funded_loan()

        assert engine.payments.on_payment_failed(loan.id, "borrower", "tr-1", "insufficient_funds") is True
        assert engine.payments.on_payment_failed(loan.id, "borrower", "tr-1", "insufficient_funds") is False

        failed = [e for e in engine.trust_scores.get_events("borrower") if e.event_type == TrustEventType.PAYMENT_FAILED]
        assert len(failed) == 1
        assert failed[0].score_impact == -5

    def test_missed_payment_severity(self, engine, funded_loan):
        """Test each severity level is applied once per installment"""
        loan = funded_loan()
        entry = engine.loans.get_schedule(loan.id)[0]

        assert engine.payments.on_payment_missed(loan.id, "borrower", 5, entry.id) is True
        assert engine.payments.on_payment_missed(loan.id, "borrower", 6, entry.id) is False
        assert engine.payments.on_payment_missed(loan.id, "borrower", 31, entry.id) is True

        assert engine.borrowers.get_profile("borrower").payments_missed == 1

    def test_sweep_missed_payments(self, engine, funded_loan):
        """Test the sweep penalizes overdue installments and is rerunnable"""
        loan = funded_loan()
        first, second = engine.loans.get_schedule(loan.id)[:2]

        stats = engine.payments.sweep_missed_payments(first.due_date + timedelta(days=11))
        assert stats == {"loans_checked": 1, "overdue_entries": 1, "penalties_recorded": 1, "errors": 0}
        assert engine.loans.get_schedule_entry(first.id).status == ScheduleStatus.OVERDUE

        again = engine.payments.sweep_missed_payments(first.due_date + timedelta(days=11))
        assert again["penalties_recorded"] == 0

        later = engine.payments.sweep_missed_payments(second.due_date + timedelta(days=4))
        assert later["overdue_entries"] == 2
        assert later["penalties_recorded"] == 2


class TestDefaults:
    """Test mark_loan_defaulted"""

    def test_default_consequences(self, engine, make_borrower, funded_loan):
        """Test default penalizes the borrower and vouchers and blocks borrowing"""
        make_borrower("borrower")
        make_borrower("voucher")
        engine.vouching.create_vouch("voucher", "borrower", VouchType.CHARACTER)
        loan = funded_loan()

        result = engine.payments.mark_loan_defaulted(loan.id)

        assert result.defaulted is True
        assert result.vouchers_updated == 1
        loan = engine.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.DEFAULTED
        profile = engine.borrowers.get_profile("borrower")
        assert profile.is_blocked is True
        assert profile.total_loans_defaulted == 1
        assert engine.borrowers.get_profile("voucher").active_vouchee_defaults == 1
        assert engine.business_trust.get("borrower", "acme").status == BusinessTrustStatus.SUSPENDED
        defaults = [e for e in engine.trust_scores.get_events("borrower") if e.event_type == TrustEventType.LOAN_DEFAULTED]
        assert [e.score_impact for e in defaults] == [-30]
        # Reserved capital is not released on default
        assert engine.lenders.get_preference("business:acme").capital_reserved == Decimal("1000.00")

    def test_default_is_idempotent(self, engine, funded_loan):
        """Test a second default call applies nothing new"""
        loan = funded_loan()
        engine.payments.mark_loan_defaulted(loan.id)

        again = engine.payments.mark_loan_defaulted(loan.id)

        assert again.defaulted is False
        assert again.already_defaulted is True
        assert engine.borrowers.get_profile("borrower").total_loans_defaulted == 1
        defaults = [e for e in engine.trust_scores.get_events("borrower") if e.event_type == TrustEventType.LOAN_DEFAULTED]
        assert len(defaults) == 1

    def test_pending_loan_cannot_default(self, engine, make_borrower):
        """Test only active loans default"""
        make_borrower("borrower")
        outcome = engine.request_loan("borrower", Decimal("100"), 4, lender_type=LenderType.PERSONAL)

        with pytest.raises(ConflictError):
            engine.payments.mark_loan_defaulted(outcome.loan.id)

    def test_voucher_locked_after_repeated_defaults(self, engine, make_borrower, make_lender):
        """Test a voucher whose vouchees default twice is locked, then released when debt clears"""
        make_borrower("voucher")
        make_lender("acme", capital="10000")
        loans = []
        for borrower_id in ("first", "second"):
            make_borrower(borrower_id)
            engine.vouching.create_vouch("voucher", borrower_id, VouchType.CHARACTER)
            outcome = engine.request_loan(borrower_id, Decimal("500"), 6)
            engine.matching.respond_to_offer(outcome.offers[0].id, "accept")
            loans.append(outcome.loan.id)

        engine.payments.mark_loan_defaulted(loans[0])
        result = engine.payments.mark_loan_defaulted(loans[1])

        assert result.vouchers_locked == 1
        assert engine.borrowers.get_profile("voucher").vouching_locked is True

        engine.clear_borrower_debt("second")

        voucher = engine.borrowers.get_profile("voucher")
        assert voucher.active_vouchee_defaults == 1
        assert voucher.vouching_locked is False
