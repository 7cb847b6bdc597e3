"""
Test suite for vouches and voucher accountability
"""

import pytest
from datetime import datetime, timedelta, timezone

from p2p_lending.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from p2p_lending.trust_score import TrustEventType
from p2p_lending.vouching import (
    LinkState, VouchStatus, VouchType, calculate_vouch_strength, simple_trust_tier,
    success_multiplier, success_rate
)


class TestVouchRules:
    """Test vouch strength and tier helpers"""

    def test_strength(self):
        """Test strength grows with years known and is capped"""
        assert calculate_vouch_strength(VouchType.CHARACTER, 0) == 4
        assert calculate_vouch_strength(VouchType.FAMILY, 2) == 7
        assert calculate_vouch_strength(VouchType.GUARANTEE, 10) == 10

    def test_trust_tiers(self):
        """Test tier thresholds on active vouch count"""
        assert simple_trust_tier(0) == "tier_1"
        assert simple_trust_tier(3) == "tier_2"
        assert simple_trust_tier(6) == "tier_3"
        assert simple_trust_tier(11) == "tier_4"

    def test_success_rate(self):
        """Test success rate and its strength multiplier"""
        assert str(success_rate(0, 0)) == "100"
        assert str(success_rate(3, 1)) == "75.00"
        assert str(success_multiplier(success_rate(3, 1))) == "0.75"


class TestVouchLifecycle:
    """Test creating and revoking vouches"""

    def test_create_vouch_credits_vouchee(self, engine, make_borrower):
        """Test a vouch raises the vouchee's social component"""
        make_borrower("voucher")
        make_borrower("vouchee")
        before = engine.trust_scores.get_breakdown("vouchee").components["social"]

        vouch = engine.vouching.create_vouch("voucher", "vouchee", VouchType.GUARANTEE, known_years=1)

        assert vouch.vouch_strength == 8
        assert vouch.trust_score_boost == 8
        after = engine.trust_scores.get_breakdown("vouchee").components["social"]
        assert after == before + 8
        assert engine.vouching.trust_tier_for("vouchee") == "tier_1"

    def test_self_vouch_rejected(self, engine, make_borrower):
        """Test users cannot vouch for themselves"""
        make_borrower("solo")

        with pytest.raises(ValidationError):
            engine.vouching.create_vouch("solo", "solo")

    def test_new_account_cannot_vouch(self, engine, make_borrower):
        """Test the minimum account age"""
        engine.borrowers.create_profile("newbie", full_name="New Bie", created_at=datetime.now(timezone.utc))
        make_borrower("vouchee")

        with pytest.raises(ValidationError):
            engine.vouching.create_vouch("newbie", "vouchee")

    def test_voucher_needs_full_name(self, engine, make_borrower):
        """Test anonymous profiles cannot vouch"""
        engine.borrowers.create_profile(
            "anon", created_at=datetime.now(timezone.utc) - timedelta(days=30)
        )
        make_borrower("vouchee")

        eligibility = engine.vouching.check_vouching_eligibility("anon")
        assert eligibility.can_vouch is False
        with pytest.raises(ValidationError):
            engine.vouching.create_vouch("anon", "vouchee")

    def test_unknown_vouchee(self, engine, make_borrower):
        """Test vouching for an unknown user"""
        make_borrower("voucher")

        with pytest.raises(NotFoundError):
            engine.vouching.create_vouch("voucher", "ghost")

    def test_duplicate_active_vouch(self, engine, make_borrower):
        """Test one active vouch per pair"""
        make_borrower("voucher")
        make_borrower("vouchee")
        engine.vouching.create_vouch("voucher", "vouchee")

        with pytest.raises(ConflictError):
            engine.vouching.create_vouch("voucher", "vouchee")

    def test_revoke(self, engine, make_borrower):
        """Test only the voucher can revoke and the boost is reversed"""
        make_borrower("voucher")
        make_borrower("vouchee")
        vouch = engine.vouching.create_vouch("voucher", "vouchee")

        with pytest.raises(AuthorizationError):
            engine.vouching.revoke_vouch(vouch.id, "vouchee")

        revoked = engine.vouching.revoke_vouch(vouch.id, "voucher")

        assert revoked.status == VouchStatus.REVOKED
        assert engine.vouching.active_vouches_for("vouchee") == []
        revocations = [e for e in engine.trust_scores.get_events("vouchee") if e.event_type == TrustEventType.VOUCH_REVOKED]
        assert [e.score_impact for e in revocations] == [-vouch.trust_score_boost]
        with pytest.raises(ConflictError):
            engine.vouching.revoke_vouch(vouch.id, "voucher")


class TestVoucheeLoans:
    """Test the vouchee loan pipelines directly"""

    def setup_vouch(self, engine, make_borrower):
        make_borrower("voucher")
        make_borrower("vouchee")
        return engine.vouching.create_vouch("voucher", "vouchee")

    def test_new_loan_links_once(self, engine, make_borrower):
        """Test repeated new-loan calls count the loan once"""
        vouch = self.setup_vouch(engine, make_borrower)

        assert engine.vouching.on_vouchee_new_loan("vouchee", "loan-1") == 1
        assert engine.vouching.on_vouchee_new_loan("vouchee", "loan-1") == 0

        assert engine.vouching.get_vouch(vouch.id).loans_active == 1
        assert engine.vouching.get_link(vouch.id, "loan-1").state == LinkState.ACTIVE

    def test_payment_credit_once(self, engine, make_borrower):
        """Test on-time payments credit each vouch once; late ones never"""
        vouch = self.setup_vouch(engine, make_borrower)

        assert engine.vouching.on_vouchee_payment_made("vouchee", "loan-1", "p1", 0) == 1
        assert engine.vouching.on_vouchee_payment_made("vouchee", "loan-1", "p1", 0) == 0
        assert engine.vouching.on_vouchee_payment_made("vouchee", "loan-1", "p2", 3) == 0

        assert engine.vouching.get_vouch(vouch.id).ontime_payments == 1

    def test_completion_once(self, engine, make_borrower):
        """Test completion moves counters once and rewards the voucher once"""
        vouch = self.setup_vouch(engine, make_borrower)
        engine.vouching.on_vouchee_new_loan("vouchee", "loan-1")

        first = engine.vouching.on_vouchee_loan_completed("vouchee", "loan-1")
        second = engine.vouching.on_vouchee_loan_completed("vouchee", "loan-1")

        assert first.vouchers_updated == 1
        assert first.trust_events_recorded == 1
        assert first.vouchers_notified == 1
        assert second.vouchers_updated == 0
        assert second.trust_events_recorded == 0
        vouch = engine.vouching.get_vouch(vouch.id)
        assert (vouch.loans_active, vouch.loans_completed) == (0, 1)

    def test_completion_without_prior_link(self, engine, make_borrower):
        """Test a vouch given after funding still counts the completed loan"""
        vouch = self.setup_vouch(engine, make_borrower)

        outcome = engine.vouching.on_vouchee_loan_completed("vouchee", "loan-9")

        assert outcome.vouchers_updated == 1
        vouch = engine.vouching.get_vouch(vouch.id)
        assert (vouch.loans_active, vouch.loans_completed) == (0, 1)

    def test_default_reduces_strength(self, engine, make_borrower):
        """Test a default cuts strength by the voucher's track record"""
        vouch = self.setup_vouch(engine, make_borrower)
        engine.vouching.on_vouchee_new_loan("vouchee", "loan-1")

        outcome = engine.vouching.on_vouchee_loan_defaulted("vouchee", "loan-1")
        repeat = engine.vouching.on_vouchee_loan_defaulted("vouchee", "loan-1")

        assert outcome.vouchers_updated == 1
        assert repeat.vouchers_updated == 0
        updated = engine.vouching.get_vouch(vouch.id)
        assert updated.loans_defaulted == 1
        assert updated.loans_active == 0
        assert str(updated.success_rate) == "0.00"
        # 4 * 0.35 rounds to 1
        assert updated.vouch_strength == 1
        penalties = [e for e in engine.trust_scores.get_events("voucher") if e.event_type == TrustEventType.VOUCHEE_DEFAULTED]
        assert [e.score_impact for e in penalties] == [-10]

    def test_revoked_vouch_still_accountable(self, engine, make_borrower):
        """Test revoking after funding does not escape a later default"""
        vouch = self.setup_vouch(engine, make_borrower)
        engine.vouching.on_vouchee_new_loan("vouchee", "loan-1")
        engine.vouching.revoke_vouch(vouch.id, "voucher")

        outcome = engine.vouching.on_vouchee_loan_defaulted("vouchee", "loan-1")

        assert outcome.vouchers_updated == 1
        assert engine.vouching.get_link(vouch.id, "loan-1").state == LinkState.DEFAULTED
