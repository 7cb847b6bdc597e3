"""
Loan Matching Module

Matches pending business-sourced loan requests against lender preferences,
creates time-boxed offers, and moves to the next-ranked lender when an offer
is declined or expires.

An offer's validity is decided by comparing the current time with its
expires_at at the moment a transition is attempted. Offer and loan state
change through conditional writes inside one transaction, so a concurrent
accept and expiry on the same offer cannot both take effect.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerRepository, BusinessTrustService
from .config import LendingConfig, get_config
from .errors import (
    AuthorizationError, ConflictError, NotFoundError, OfferAlreadyResolvedError,
    OfferExpiredError, ValidationError
)
from .interest import RateContext, RateResolver, calculate_loan_totals
from .lenders import LenderCapitalService, LenderPreference
from .loans import Loan, LoanMatchStatus, LoanRepository, LoanStatus, LenderType
from .money import format_amount, round_money
from .notifications import NotificationOutbox, NotificationType
from .storage import StorageInterface, StorageRecord
from .vouching import VoucherAccountability


logger = logging.getLogger("p2p_lending.matching")


class OfferStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    SKIPPED = "skipped"


class OfferAction(Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


@dataclass
class LoanMatch(StorageRecord):
    """Time-boxed offer of a loan to one candidate lender"""
    loan_id: str
    match_rank: int
    match_score: Decimal
    expires_at: datetime
    status: OfferStatus = OfferStatus.PENDING
    lender_user_id: Optional[str] = None
    lender_business_id: Optional[str] = None
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None

    @property
    def lender_key(self) -> str:
        if self.lender_user_id:
            return f"user:{self.lender_user_id}"
        return f"business:{self.lender_business_id}"

    @property
    def lender_contact_id(self) -> str:
        return self.lender_user_id or self.lender_business_id

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def state_snapshot(self) -> Dict[str, Any]:
        return {
            "match_id": self.id,
            "loan_id": self.loan_id,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class OfferResponse:
    """Result of accepting or declining an offer"""
    match_id: str
    loan_id: str
    action: OfferAction
    status: OfferStatus
    loan_status: LoanStatus
    next_match_id: Optional[str] = None
    no_match: bool = False


def score_candidate(preference: LenderPreference, amount: Decimal) -> Decimal:
    """
    Rank score in [0, 100]: 60 points for spare capital (capped at 10x the
    loan amount) and 40 points for the lender's historical acceptance rate.
    """
    headroom = min(preference.available_capital / amount, Decimal("10"))
    acceptance = preference.acceptance_rate / Decimal("100")
    return round_money(headroom * 6 + acceptance * 40, 4)


def rank_candidates(
    candidates: List[LenderPreference],
    amount: Decimal,
    default_rate: Decimal
) -> List[LenderPreference]:
    """
    Order candidates by score, then cheaper rate, then lender key.

    The lender key is unique, so the order is total and re-running selection
    on the same inputs reproduces it.
    """
    def sort_key(preference: LenderPreference):
        rate = preference.interest_rate if preference.interest_rate is not None else default_rate
        return (-score_candidate(preference, amount), rate, preference.id)

    return sorted(candidates, key=sort_key)


class LoanMatchingEngine:
    """
    Offer creation, responses, expiry and loan activation
    """

    def __init__(
        self,
        storage: StorageInterface,
        loans: LoanRepository,
        lenders: LenderCapitalService,
        borrowers: BorrowerRepository,
        vouching: VoucherAccountability,
        business_trust: BusinessTrustService,
        outbox: NotificationOutbox,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.loans = loans
        self.lenders = lenders
        self.borrowers = borrowers
        self.vouching = vouching
        self.business_trust = business_trust
        self.outbox = outbox
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.matches_table = "loan_matches"
        self.rate_resolver = RateResolver(self.config.default_interest_rate)

    @property
    def offer_ttl(self) -> timedelta:
        return timedelta(hours=self.config.offer_ttl_hours)

    # Queries

    def find_match(self, match_id: str) -> Optional[LoanMatch]:
        data = self.storage.load(self.matches_table, match_id)
        return LoanMatch.from_dict(data) if data else None

    def get_match(self, match_id: str) -> LoanMatch:
        match = self.find_match(match_id)
        if not match:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    def matches_for_loan(self, loan_id: str) -> List[LoanMatch]:
        matches = [
            LoanMatch.from_dict(data)
            for data in self.storage.find(self.matches_table, {"loan_id": loan_id})
        ]
        return sorted(matches, key=lambda m: m.match_rank)

    # Candidate selection

    def find_candidates(self, loan: Loan) -> List[LenderPreference]:
        """Active lenders whose criteria and spare capital cover the loan"""
        profile = self.borrowers.find_profile(loan.borrower_id)
        first_time = profile.is_first_time_borrower if profile else True

        candidates = []
        for preference in self.lenders.active_preferences():
            if preference.lender_user_id and preference.lender_user_id == loan.borrower_id:
                continue
            limit = preference.limit_for(first_time)
            if limit is None or loan.amount > limit:
                continue
            if loan.amount < preference.min_amount:
                continue
            if preference.available_capital < loan.amount:
                continue
            candidates.append(preference)

        default_rate = Decimal(self.config.default_interest_rate)
        return rank_candidates(candidates, loan.amount, default_rate)[:self.config.max_offers_per_loan]

    def create_offers(self, loan_id: str, now: Optional[datetime] = None) -> List[LoanMatch]:
        """
        Create ranked offers for a pending business-sourced loan.

        Personal loans are funded directly and never matched. Calling again
        for a loan that already has offers returns the existing offers.

        Returns:
            Offers ordered by match_rank (empty if no lender qualifies)

        Raises:
            ConflictError: If the loan is no longer pending
        """
        now = now or datetime.now(timezone.utc)
        loan = self.loans.get_loan(loan_id)
        if loan.lender_type == LenderType.PERSONAL:
            return []

        existing = self.matches_for_loan(loan_id)
        if existing:
            return existing
        if loan.status != LoanStatus.PENDING:
            raise ConflictError(f"Loan {loan_id} is not awaiting a lender", loan.state_snapshot())

        candidates = self.find_candidates(loan)
        matches = []
        with self.storage.atomic():
            if not self.loans.update_fields(
                loan_id,
                {"status": LoanStatus.PENDING, "match_status": LoanMatchStatus.NONE},
                {"match_status": LoanMatchStatus.NO_MATCH if not candidates else LoanMatchStatus.OFFERED}
            ):
                # Another caller is matching this loan
                return self.matches_for_loan(loan_id)

            for rank, preference in enumerate(candidates, start=1):
                match = LoanMatch(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    match_rank=rank,
                    match_score=score_candidate(preference, loan.amount),
                    expires_at=now + self.offer_ttl,
                    lender_user_id=preference.lender_user_id,
                    lender_business_id=preference.lender_business_id,
                )
                self.storage.insert_unique(self.matches_table, match.id, match.to_dict())
                matches.append(match)

            if matches:
                self.loans.update_fields(loan_id, {}, {"current_match_id": matches[0].id})

        if not matches:
            logger.info("No lender matched loan %s", loan_id)
            self.outbox.emit(
                loan.borrower_id, NotificationType.NO_MATCH,
                "We could not find a lender for your loan request right now",
                {"loan_id": loan_id}
            )
            self.audit_trail.log_event(AuditEventType.NO_MATCH, "loan", loan_id, {})
            return []

        self._offer_to(matches[0], loan)
        self.audit_trail.log_event(
            AuditEventType.OFFERS_CREATED, "loan", loan_id,
            {"offers": len(matches), "lenders": [m.lender_key for m in matches]}
        )
        logger.info("Created %d offers for loan %s", len(matches), loan_id)
        return matches

    def _offer_to(self, match: LoanMatch, loan: Loan) -> None:
        self._best_effort("offer_stats", lambda: self.lenders.record_offer_outcome(match.lender_key, "received"))
        self.outbox.emit(
            match.lender_contact_id, NotificationType.LOAN_MATCH_OFFER,
            f"New loan request for {format_amount(loan.amount, loan.currency)} matches your preferences",
            {"loan_id": loan.id, "match_id": match.id, "expires_at": match.expires_at.isoformat()}
        )

    # Responses

    def respond_to_offer(
        self,
        match_id: str,
        action: Any,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> OfferResponse:
        """
        Accept or decline an offer.

        Args:
            match_id: Offer being answered
            action: "accept" or "decline"
            actor_id: Responding user; must be the offered lender when given
            reason: Decline reason
            now: Response time (defaults to current UTC time)

        Returns:
            OfferResponse describing the resulting offer and loan state

        Raises:
            ValidationError: Unknown action
            AuthorizationError: Actor is not the offered lender
            OfferAlreadyResolvedError: Offer is no longer pending
            OfferExpiredError: Accepting an offer past its expiry
            ConflictError: Loan acquired a lender through another path
        """
        try:
            action = OfferAction(action.value if isinstance(action, OfferAction) else str(action).lower())
        except ValueError:
            raise ValidationError(f"Invalid action: {action}", {"allowed": [a.value for a in OfferAction]})

        now = now or datetime.now(timezone.utc)
        match = self.get_match(match_id)
        if actor_id is not None and actor_id != match.lender_contact_id:
            raise AuthorizationError("Only the offered lender can respond to this offer")
        if match.status != OfferStatus.PENDING:
            raise OfferAlreadyResolvedError(
                f"Offer {match_id} is already {match.status.value}", match.state_snapshot()
            )

        if action == OfferAction.DECLINE:
            return self._decline(match, reason, now)
        if match.is_expired(now):
            self._expire(match, now)
            raise OfferExpiredError(
                f"Offer {match_id} expired at {match.expires_at.isoformat()}",
                self.get_match(match_id).state_snapshot()
            )
        return self._accept(match, now)

    def _resolve(self, match: LoanMatch, status: OfferStatus, now: datetime, **fields: Any) -> None:
        """Conditionally move a pending offer to a terminal status"""
        updates = {"status": status, "responded_at": now}
        updates.update(fields)
        if not self.storage.compare_and_set(
            self.matches_table, match.id, {"status": OfferStatus.PENDING}, updates
        ):
            current = self.get_match(match.id)
            raise OfferAlreadyResolvedError(
                f"Offer {match.id} is already {current.status.value}", current.state_snapshot()
            )

    def _decline(self, match: LoanMatch, reason: Optional[str], now: datetime) -> OfferResponse:
        with self.storage.atomic():
            self._resolve(match, OfferStatus.DECLINED, now, decline_reason=reason)
            next_match = self._cascade(match, now)

        self._best_effort("offer_stats", lambda: self.lenders.record_offer_outcome(match.lender_key, "declined"))
        self.audit_trail.log_event(
            AuditEventType.OFFER_DECLINED, "loan_match", match.id,
            {"loan_id": match.loan_id, "reason": reason}, user_id=match.lender_contact_id
        )
        loan = self._after_cascade(match.loan_id, next_match)
        return OfferResponse(
            match_id=match.id,
            loan_id=match.loan_id,
            action=OfferAction.DECLINE,
            status=OfferStatus.DECLINED,
            loan_status=loan.status,
            next_match_id=next_match.id if next_match else None,
            no_match=loan.match_status == LoanMatchStatus.NO_MATCH,
        )

    def _expire(self, match: LoanMatch, now: datetime) -> Optional[LoanMatch]:
        """Expire an offer and cascade; returns the next offer, if any"""
        with self.storage.atomic():
            self._resolve(match, OfferStatus.EXPIRED, now)
            next_match = self._cascade(match, now)

        self._best_effort("offer_stats", lambda: self.lenders.record_offer_outcome(match.lender_key, "expired"))
        self.audit_trail.log_event(
            AuditEventType.OFFER_EXPIRED, "loan_match", match.id, {"loan_id": match.loan_id}
        )
        self._after_cascade(match.loan_id, next_match)
        return next_match

    def _cascade(self, resolved: LoanMatch, now: datetime) -> Optional[LoanMatch]:
        """
        Hand the loan to the next-ranked pending offer.

        Runs inside the caller's transaction. Only the loan's current offer
        cascades; resolving a queued offer leaves the current one in place.
        The next offer gets a fresh expiry from the moment it is offered.
        """
        loan = self.loans.get_loan(resolved.loan_id)
        if loan.status != LoanStatus.PENDING or loan.current_match_id not in (resolved.id, None):
            return None

        pending = [m for m in self.matches_for_loan(loan.id) if m.status == OfferStatus.PENDING]
        if not pending:
            self.loans.update_fields(
                loan.id,
                {"status": LoanStatus.PENDING, "current_match_id": loan.current_match_id},
                {"match_status": LoanMatchStatus.NO_MATCH, "current_match_id": None}
            )
            return None

        next_match = pending[0]
        self.storage.compare_and_set(
            self.matches_table, next_match.id,
            {"status": OfferStatus.PENDING},
            {"expires_at": now + self.offer_ttl}
        )
        self.loans.update_fields(
            loan.id,
            {"status": LoanStatus.PENDING, "current_match_id": loan.current_match_id},
            {"current_match_id": next_match.id, "match_status": LoanMatchStatus.OFFERED}
        )
        return self.get_match(next_match.id)

    def _after_cascade(self, loan_id: str, next_match: Optional[LoanMatch]) -> Loan:
        loan = self.loans.get_loan(loan_id)
        if next_match:
            self._offer_to(next_match, loan)
        elif loan.match_status == LoanMatchStatus.NO_MATCH and loan.status == LoanStatus.PENDING:
            self.outbox.emit(
                loan.borrower_id, NotificationType.NO_MATCH,
                "None of the matched lenders accepted your loan request",
                {"loan_id": loan_id}
            )
            self.audit_trail.log_event(AuditEventType.NO_MATCH, "loan", loan_id, {})
        return loan

    def _accept(self, match: LoanMatch, now: datetime) -> OfferResponse:
        with self.storage.atomic():
            self._resolve(match, OfferStatus.ACCEPTED, now)
            loan = self._activate(
                match.loan_id,
                lender_user_id=match.lender_user_id,
                lender_business_id=match.lender_business_id,
                now=now,
            )
            for sibling in self.matches_for_loan(match.loan_id):
                if sibling.id != match.id and sibling.status == OfferStatus.PENDING:
                    self.storage.compare_and_set(
                        self.matches_table, sibling.id,
                        {"status": OfferStatus.PENDING},
                        {"status": OfferStatus.SKIPPED, "responded_at": now}
                    )

        self._best_effort("offer_stats", lambda: self.lenders.record_offer_outcome(match.lender_key, "accepted"))
        self.audit_trail.log_event(
            AuditEventType.OFFER_ACCEPTED, "loan_match", match.id,
            {"loan_id": match.loan_id}, user_id=match.lender_contact_id
        )
        self._after_activation(loan, now)
        return OfferResponse(
            match_id=match.id,
            loan_id=loan.id,
            action=OfferAction.ACCEPT,
            status=OfferStatus.ACCEPTED,
            loan_status=loan.status,
        )

    def accept_direct_loan(
        self,
        loan_id: str,
        lender_id: str,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Fund a personal loan directly (no matching).

        Raises:
            ValidationError: Loan is business-sourced or the lender is the borrower
            AuthorizationError: The loan invited a different lender
            ConflictError: The loan is no longer pending
        """
        now = now or datetime.now(timezone.utc)
        loan = self.loans.get_loan(loan_id)
        if loan.lender_type != LenderType.PERSONAL:
            raise ValidationError("Business loans are funded through offers")
        if lender_id == loan.borrower_id:
            raise ValidationError("Borrowers cannot fund their own loans")
        if loan.invited_lender_id and loan.invited_lender_id != lender_id:
            raise AuthorizationError("This loan request was sent to a different lender")

        with self.storage.atomic():
            loan = self._activate(loan_id, lender_user_id=lender_id, now=now)
        self._after_activation(loan, now)
        return loan

    def _activate(
        self,
        loan_id: str,
        lender_user_id: Optional[str] = None,
        lender_business_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Assign the lender, fix the rate and regenerate the schedule.

        Runs inside the caller's transaction; raising rolls back the offer
        transition as well.
        """
        now = now or datetime.now(timezone.utc)
        loan = self.loans.get_loan(loan_id)
        if loan.status != LoanStatus.PENDING or loan.lender_id or loan.business_lender_id:
            raise ConflictError(f"Loan {loan_id} already has a lender", loan.state_snapshot())

        key = f"user:{lender_user_id}" if lender_user_id else f"business:{lender_business_id}"
        preference = self.lenders.find_preference(key)
        tier_policy = self.lenders.get_tier_policy(key, self.vouching.trust_tier_for(loan.borrower_id))
        resolved = self.rate_resolver.resolve(RateContext(
            requested_rate=loan.requested_interest_rate,
            tier_policy_rate=tier_policy.interest_rate if tier_policy else None,
            lender_preference_rate=preference.interest_rate if preference else None,
        ))
        interest_type = preference.interest_type if preference else loan.interest_type
        totals = calculate_loan_totals(
            loan.amount, resolved.rate, loan.total_installments, loan.repayment_frequency, interest_type
        )

        activated = self.loans.transition(
            loan_id,
            [LoanStatus.PENDING],
            LoanStatus.ACTIVE,
            updates={
                "lender_id": lender_user_id,
                "business_lender_id": lender_business_id,
                "match_status": LoanMatchStatus.MATCHED,
                "interest_rate": resolved.rate,
                "interest_rate_source": resolved.source,
                "interest_type": interest_type,
                "total_interest": totals.total_interest,
                "total_amount": totals.total_amount,
                "amount_remaining": totals.total_amount - loan.amount_paid,
                "start_date": now.date(),
                "funded_at": now,
            },
            expected={"lender_id": None, "business_lender_id": None},
        )
        if not activated:
            current = self.loans.get_loan(loan_id)
            raise ConflictError(f"Loan {loan_id} already has a lender", current.state_snapshot())

        loan = self.loans.get_loan(loan_id)
        self.loans.regenerate_schedule(loan, now.date())
        logger.info("Loan %s activated with %s at %s%% (%s)", loan_id, key, resolved.rate, resolved.source)
        return loan

    def _after_activation(self, loan: Loan, now: datetime) -> None:
        """Bookkeeping that follows a successful activation; failures are logged"""
        self._best_effort("capital_reserve", lambda: self.lenders.reserve_capital(loan, now))
        self._best_effort("voucher_new_loan", lambda: self.vouching.on_vouchee_new_loan(loan.borrower_id, loan.id))
        self._best_effort("business_trust", lambda: self.business_trust.on_loan_created(loan))
        self.outbox.emit(
            loan.borrower_id, NotificationType.LOAN_ACCEPTED,
            f"Your loan of {format_amount(loan.amount, loan.currency)} has been funded",
            {"loan_id": loan.id, "interest_rate": str(loan.interest_rate)}
        )
        self.audit_trail.log_event(
            AuditEventType.LOAN_ACTIVATED, "loan", loan.id,
            {"lender": loan.lender_key, "interest_rate": loan.interest_rate,
             "interest_rate_source": loan.interest_rate_source,
             "total_amount": loan.total_amount}
        )

    # Expiry sweep

    def expire_offers(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire every pending offer past its expiry and cascade.

        Returns:
            Counters: checked, expired, cascaded, no_match, errors
        """
        now = now or datetime.now(timezone.utc)
        stats = {"checked": 0, "expired": 0, "cascaded": 0, "no_match": 0, "errors": 0}
        pending = [
            LoanMatch.from_dict(data)
            for data in self.storage.find(self.matches_table, {"status": OfferStatus.PENDING.value})
        ]
        for match in sorted(pending, key=lambda m: (m.loan_id, m.match_rank)):
            stats["checked"] += 1
            # Re-read: an earlier cascade in this sweep may have refreshed it
            match = self.get_match(match.id)
            if match.status != OfferStatus.PENDING or not match.is_expired(now):
                continue
            loan = self.loans.find_loan(match.loan_id)
            if loan and loan.status == LoanStatus.PENDING and loan.current_match_id != match.id:
                # Queued offer: its clock starts when the cascade reaches it
                continue
            try:
                next_match = self._expire(match, now)
            except OfferAlreadyResolvedError:
                continue
            except Exception:
                logger.error("Failed to expire offer %s", match.id, exc_info=True)
                stats["errors"] += 1
                continue
            stats["expired"] += 1
            if next_match:
                stats["cascaded"] += 1
            elif self.loans.get_loan(match.loan_id).match_status == LoanMatchStatus.NO_MATCH:
                stats["no_match"] += 1

        if stats["expired"]:
            logger.info("Offer expiry sweep: %s", stats)
        return stats

    def _best_effort(self, step: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except Exception:
            logger.error("Matching step %s failed", step, exc_info=True)
            return None
