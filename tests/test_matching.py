"""
Test suite for lender matching, offer responses and the expiry cascade
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from p2p_lending.errors import (
    AuthorizationError, ConflictError, OfferAlreadyResolvedError, OfferExpiredError, ValidationError
)
from p2p_lending.lenders import LenderPreference
from p2p_lending.loans import LenderType, LoanMatchStatus, LoanStatus
from p2p_lending.matching import OfferStatus, rank_candidates, score_candidate


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _preference(key, capital, acceptance="100", rate=None):
    business_id = key.split(":", 1)[1]
    return LenderPreference(
        id=key, created_at=T0, updated_at=T0,
        lender_business_id=business_id,
        max_amount=Decimal("5000"),
        capital_pool=Decimal(capital),
        acceptance_rate=Decimal(acceptance),
        interest_rate=Decimal(rate) if rate is not None else None,
    )


class TestRanking:
    """Test candidate scoring and ordering"""

    def test_score_components(self):
        """Test capital headroom is capped at ten times the amount"""
        assert score_candidate(_preference("business:a", "5000"), Decimal("500")) == Decimal("100")
        assert score_candidate(_preference("business:b", "50000"), Decimal("500")) == Decimal("100")
        assert score_candidate(_preference("business:c", "1000", acceptance="50"), Decimal("500")) == Decimal("32")

    def test_ranking_is_deterministic(self):
        """Test ties break on rate, then lender key"""
        candidates = [
            _preference("business:zeta", "5000", rate="12"),
            _preference("business:alpha", "5000", rate="12"),
            _preference("business:cheap", "5000", rate="8"),
            _preference("business:small", "1000"),
        ]

        first = [p.id for p in rank_candidates(candidates, Decimal("500"), Decimal("10"))]
        second = [p.id for p in rank_candidates(list(reversed(candidates)), Decimal("500"), Decimal("10"))]

        assert first == ["business:cheap", "business:alpha", "business:zeta", "business:small"]
        assert first == second


class TestOfferCreation:
    """Test offer creation for business loans"""

    def test_offers_ranked_and_first_is_current(self, engine, make_borrower, make_lender):
        """Test offers follow rank and the loan points at the first"""
        make_borrower("borrower")
        make_lender("big", capital="5000")
        make_lender("mid", capital="3000")
        make_lender("small", capital="1000")

        outcome = engine.request_loan("borrower", Decimal("500"), 6, now=T0)
        offers = outcome.offers

        assert [o.lender_business_id for o in offers] == ["big", "mid", "small"]
        assert [o.match_rank for o in offers] == [1, 2, 3]
        assert all(o.expires_at == T0 + timedelta(hours=24) for o in offers)
        assert outcome.loan.current_match_id == offers[0].id
        assert outcome.loan.match_status == LoanMatchStatus.OFFERED

    def test_capital_and_limits_filter_candidates(self, engine, make_borrower, make_lender):
        """Test lenders without spare capital or with low limits are skipped"""
        make_borrower("borrower")
        make_lender("rich", capital="5000")
        make_lender("poor", capital="100")
        make_lender("capped", capital="5000", max_amount="2000", first_time_borrower_limit=Decimal("200"))
        make_lender("no-first-timers", capital="5000", allow_first_time_borrowers=False)

        outcome = engine.request_loan("borrower", Decimal("500"), 6, now=T0)

        assert [o.lender_business_id for o in outcome.offers] == ["rich"]

    def test_create_offers_idempotent(self, engine, make_borrower, make_lender):
        """Test re-running offer creation returns the existing offers"""
        make_borrower("borrower")
        make_lender("big")
        outcome = engine.request_loan("borrower", Decimal("500"), 6, now=T0)

        again = engine.matching.create_offers(outcome.loan.id, T0 + timedelta(minutes=5))

        assert [o.id for o in again] == [o.id for o in outcome.offers]
        assert len(engine.matching.matches_for_loan(outcome.loan.id)) == 1

    def test_personal_loans_are_not_matched(self, engine, make_borrower, make_lender):
        """Test personal loans never get offers"""
        make_borrower("borrower")
        make_lender("big")

        outcome = engine.request_loan(
            "borrower", Decimal("100"), 4, lender_type=LenderType.PERSONAL, now=T0
        )

        assert outcome.offers == []
        assert engine.matching.create_offers(outcome.loan.id, T0) == []

    def test_no_candidates_means_no_match(self, engine, make_borrower, make_lender):
        """Test a loan nobody can fund is marked no_match and the borrower told"""
        make_borrower("borrower")
        make_lender("tiny", capital="50", max_amount="2000")

        outcome = engine.request_loan("borrower", Decimal("500"), 6, now=T0)

        assert outcome.offers == []
        assert outcome.loan.match_status == LoanMatchStatus.NO_MATCH
        types = [i.notification_type.value for i in engine.outbox.get_for_user("borrower")]
        assert "no_match" in types


class TestOfferResponses:
    """Test accepting and declining offers"""

    def setup_loan(self, engine, make_borrower, make_lender):
        make_borrower("borrower")
        make_lender("big", capital="5000")
        make_lender("mid", capital="3000")
        make_lender("small", capital="1000")
        return engine.request_loan("borrower", Decimal("500"), 6, now=T0)

    def test_accept_activates_loan(self, engine, make_borrower, make_lender):
        """Test accepting funds the loan and skips the other offers"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)
        first = outcome.offers[0]

        response = engine.matching.respond_to_offer(first.id, "accept", actor_id="big", now=T0 + timedelta(hours=1))

        assert response.status == OfferStatus.ACCEPTED
        assert response.loan_status == LoanStatus.ACTIVE
        loan = engine.loans.get_loan(outcome.loan.id)
        assert loan.business_lender_id == "big"
        assert loan.match_status == LoanMatchStatus.MATCHED
        assert loan.interest_rate == Decimal("10")
        assert loan.interest_rate_source == "platform_default"
        statuses = [m.status for m in engine.matching.matches_for_loan(loan.id)]
        assert statuses == [OfferStatus.ACCEPTED, OfferStatus.SKIPPED, OfferStatus.SKIPPED]

        preference = engine.lenders.get_preference("business:big")
        assert preference.capital_reserved == Decimal("500.00")
        assert preference.offers_accepted == 1

    def test_accept_schedule_uses_resolved_rate(self, engine, make_borrower, make_lender):
        """Test activation regenerates the schedule from the funding date"""
        make_borrower("borrower")
        make_lender("big", capital="5000", interest_rate=Decimal("12"))
        outcome = engine.request_loan("borrower", Decimal("1000"), 12, now=T0)

        # Next calendar day, still inside the offer window
        engine.matching.respond_to_offer(outcome.offers[0].id, "accept", now=T0 + timedelta(hours=20))

        loan = engine.loans.get_loan(outcome.loan.id)
        schedule = engine.loans.get_schedule(loan.id)
        assert loan.interest_rate_source == "lender_preference"
        assert loan.total_amount == Decimal("1120.00")
        assert schedule[0].due_date == date(2024, 4, 2)
        assert schedule[-1].due_date == date(2025, 3, 2)
        assert sum(entry.amount for entry in schedule) == loan.total_amount

    def test_second_accept_conflicts(self, engine, make_borrower, make_lender):
        """Test a resolved offer cannot be answered again"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)
        first, second = outcome.offers[0], outcome.offers[1]
        engine.matching.respond_to_offer(first.id, "accept", now=T0)

        with pytest.raises(OfferAlreadyResolvedError):
            engine.matching.respond_to_offer(first.id, "accept", now=T0)
        with pytest.raises(OfferAlreadyResolvedError) as exc_info:
            engine.matching.respond_to_offer(second.id, "accept", now=T0)
        assert exc_info.value.current_state["status"] == "skipped"

    def test_wrong_lender_cannot_respond(self, engine, make_borrower, make_lender):
        """Test only the offered lender may answer"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)

        with pytest.raises(AuthorizationError):
            engine.matching.respond_to_offer(outcome.offers[0].id, "accept", actor_id="mid", now=T0)

    def test_invalid_action(self, engine, make_borrower, make_lender):
        """Test unknown actions are rejected"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)

        with pytest.raises(ValidationError):
            engine.matching.respond_to_offer(outcome.offers[0].id, "maybe", now=T0)

    def test_decline_cascades_to_next(self, engine, make_borrower, make_lender):
        """Test declining hands the loan to the next lender with a fresh expiry"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)
        decline_at = T0 + timedelta(hours=25)

        response = engine.matching.respond_to_offer(
            outcome.offers[0].id, "decline", reason="Not this week", now=decline_at
        )

        assert response.status == OfferStatus.DECLINED
        assert response.next_match_id == outcome.offers[1].id
        loan = engine.loans.get_loan(outcome.loan.id)
        assert loan.current_match_id == outcome.offers[1].id
        assert loan.status == LoanStatus.PENDING
        assert engine.matching.get_match(outcome.offers[1].id).expires_at == decline_at + timedelta(hours=24)
        assert engine.lenders.get_preference("business:big").offers_declined == 1

    def test_accept_after_expiry(self, engine, make_borrower, make_lender):
        """Test a late accept expires the offer and moves on"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)
        late = T0 + timedelta(hours=25)

        with pytest.raises(OfferExpiredError):
            engine.matching.respond_to_offer(outcome.offers[0].id, "accept", now=late)

        assert engine.matching.get_match(outcome.offers[0].id).status == OfferStatus.EXPIRED
        loan = engine.loans.get_loan(outcome.loan.id)
        assert loan.status == LoanStatus.PENDING
        assert loan.current_match_id == outcome.offers[1].id

    def test_last_decline_leaves_no_match(self, engine, make_borrower, make_lender):
        """Test declining every offer ends in no_match"""
        outcome = self.setup_loan(engine, make_borrower, make_lender)

        for offer in outcome.offers:
            response = engine.matching.respond_to_offer(offer.id, "decline", now=T0 + timedelta(hours=1))

        assert response.no_match is True
        loan = engine.loans.get_loan(outcome.loan.id)
        assert loan.match_status == LoanMatchStatus.NO_MATCH
        assert loan.current_match_id is None


class TestExpirySweep:
    """Test the scheduled offer expiry sweep"""

    def test_cascade_through_three_lenders(self, engine, make_borrower, make_lender):
        """Test each lender gets a full offer window in turn"""
        make_borrower("borrower")
        make_lender("big", capital="5000")
        make_lender("mid", capital="3000")
        make_lender("small", capital="1000")
        outcome = engine.request_loan("borrower", Decimal("500"), 6, now=T0)
        big, mid, small = outcome.offers

        stats = engine.matching.expire_offers(T0 + timedelta(hours=23))
        assert stats["expired"] == 0

        stats = engine.matching.expire_offers(T0 + timedelta(hours=24))
        assert stats["expired"] == 1
        assert stats["cascaded"] == 1
        assert engine.matching.get_match(big.id).status == OfferStatus.EXPIRED
        assert engine.matching.get_match(mid.id).expires_at == T0 + timedelta(hours=48)
        # The queued third offer is still waiting its turn
        assert engine.matching.get_match(small.id).status == OfferStatus.PENDING

        stats = engine.matching.expire_offers(T0 + timedelta(hours=30))
        assert stats["expired"] == 0

        stats = engine.matching.expire_offers(T0 + timedelta(hours=48))
        assert stats["expired"] == 1
        assert engine.loans.get_loan(outcome.loan.id).current_match_id == small.id

        stats = engine.matching.expire_offers(T0 + timedelta(hours=72))
        assert stats["expired"] == 1
        assert stats["no_match"] == 1
        loan = engine.loans.get_loan(outcome.loan.id)
        assert loan.match_status == LoanMatchStatus.NO_MATCH
        assert loan.current_match_id is None
        assert engine.lenders.get_preference("business:big").offers_expired == 1

    def test_sweep_is_idempotent(self, engine, make_borrower, make_lender):
        """Test running the sweep twice at the same time changes nothing more"""
        make_borrower("borrower")
        make_lender("big")
        engine.request_loan("borrower", Decimal("500"), 6, now=T0)

        first = engine.matching.expire_offers(T0 + timedelta(hours=25))
        second = engine.matching.expire_offers(T0 + timedelta(hours=25))

        assert first["expired"] == 1
        assert second["expired"] == 0


class TestDirectLoans:
    """Test funding personal loans directly"""

    def test_accept_direct_loan(self, engine, make_borrower):
        """Test a personal lender funds an invited loan"""
        make_borrower("borrower")
        outcome = engine.request_loan(
            "borrower", Decimal("150"), 3, lender_type=LenderType.PERSONAL,
            invited_lender_id="friend", interest_rate=Decimal("5"), now=T0
        )

        loan = engine.matching.accept_direct_loan(outcome.loan.id, "friend", now=T0)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.lender_id == "friend"
        assert loan.interest_rate_source == "loan_terms"

    def test_uninvited_lender_rejected(self, engine, make_borrower):
        """Test only the invited lender can fund"""
        make_borrower("borrower")
        outcome = engine.request_loan(
            "borrower", Decimal("150"), 3, lender_type=LenderType.PERSONAL,
            invited_lender_id="friend", now=T0
        )

        with pytest.raises(AuthorizationError):
            engine.matching.accept_direct_loan(outcome.loan.id, "stranger", now=T0)

    def test_funded_loan_cannot_be_funded_again(self, engine, make_borrower):
        """Test a second lender gets a conflict"""
        make_borrower("borrower")
        outcome = engine.request_loan("borrower", Decimal("150"), 3, lender_type=LenderType.PERSONAL, now=T0)
        engine.matching.accept_direct_loan(outcome.loan.id, "first", now=T0)

        with pytest.raises(ConflictError):
            engine.matching.accept_direct_loan(outcome.loan.id, "second", now=T0)

    def test_business_loan_cannot_be_accepted_directly(self, engine, make_borrower, make_lender):
        """Test business loans go through offers"""
        make_borrower("borrower")
        make_lender("big")
        outcome = engine.request_loan("borrower", Decimal("500"), 6, now=T0)

        with pytest.raises(ValidationError):
            engine.matching.accept_direct_loan(outcome.loan.id, "someone", now=T0)
