"""
Lender Preferences & Capital Module

Lender preference records (lending criteria plus the capital pool) and the
capital movements the loan lifecycle applies to them. Capital changes are
relative deltas applied inside the store, and each loan reserves and
releases capital at most once.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError, ValidationError
from .interest import InterestType
from .loans import Loan
from .money import round_money, to_decimal, ZERO
from .storage import StorageInterface, StorageRecord, claim_step, idempotency_key


logger = logging.getLogger("p2p_lending.lenders")

OFFER_OUTCOMES = ("received", "accepted", "declined", "expired")


@dataclass
class LenderPreference(StorageRecord):
    """
    Lending criteria and capital account of one lender.

    Exactly one of lender_user_id / lender_business_id is set; the record id
    is "user:<id>" or "business:<id>".
    """
    lender_user_id: Optional[str] = None
    lender_business_id: Optional[str] = None
    is_active: bool = True
    min_amount: Decimal = Decimal("0")
    max_amount: Decimal = Decimal("0")
    allow_first_time_borrowers: bool = True
    first_time_borrower_limit: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    interest_type: InterestType = InterestType.SIMPLE
    capital_pool: Decimal = Decimal("0")
    capital_reserved: Decimal = Decimal("0")
    offers_received: int = 0
    offers_accepted: int = 0
    offers_declined: int = 0
    offers_expired: int = 0
    acceptance_rate: Decimal = Decimal("100")
    total_loans_funded: int = 0
    total_amount_funded: Decimal = Decimal("0")
    total_interest_earned: Decimal = Decimal("0")
    last_loan_assigned_at: Optional[datetime] = None

    @property
    def available_capital(self) -> Decimal:
        return self.capital_pool - self.capital_reserved

    def limit_for(self, first_time_borrower: bool) -> Optional[Decimal]:
        """Largest amount this lender funds for the borrower category, None if excluded"""
        if not first_time_borrower:
            return self.max_amount
        if not self.allow_first_time_borrowers:
            return None
        if self.first_time_borrower_limit is not None:
            return self.first_time_borrower_limit
        return self.max_amount


@dataclass
class LenderTierPolicy(StorageRecord):
    """Interest rate a lender charges borrowers of one vouch tier"""
    lender_key: str
    tier_id: str
    interest_rate: Decimal
    max_loan_amount: Optional[Decimal] = None
    is_active: bool = True


def lender_key(user_id: Optional[str] = None, business_id: Optional[str] = None) -> str:
    if bool(user_id) == bool(business_id):
        raise ValidationError("Exactly one of lender user id or business id is required")
    return f"user:{user_id}" if user_id else f"business:{business_id}"


class LenderCapitalService:
    """
    Lender preference storage and capital bookkeeping
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.preferences_table = "lender_preferences"
        self.tier_policies_table = "lender_tier_policies"

    def create_preference(
        self,
        user_id: Optional[str] = None,
        business_id: Optional[str] = None,
        min_amount: Decimal = Decimal("0"),
        max_amount: Decimal = Decimal("0"),
        capital_pool: Decimal = Decimal("0"),
        allow_first_time_borrowers: bool = True,
        first_time_borrower_limit: Optional[Decimal] = None,
        interest_rate: Optional[Decimal] = None,
        interest_type: InterestType = InterestType.SIMPLE,
        is_active: bool = True
    ) -> LenderPreference:
        """
        Create or replace a lender's preference record.

        Capital counters of an existing record are preserved.

        Raises:
            ValidationError: If bounds or capital are inconsistent
        """
        key = lender_key(user_id, business_id)
        min_amount = round_money(min_amount)
        max_amount = round_money(max_amount)
        if min_amount < ZERO or max_amount <= ZERO or min_amount > max_amount:
            raise ValidationError(
                "Lender amount bounds are invalid",
                {"min_amount": str(min_amount), "max_amount": str(max_amount)}
            )
        if to_decimal(capital_pool) < ZERO:
            raise ValidationError("Capital pool cannot be negative")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            existing = self.find_preference(key)
            preference = LenderPreference(
                id=key,
                created_at=existing.created_at if existing else now,
                updated_at=now,
                lender_user_id=user_id,
                lender_business_id=business_id,
                is_active=is_active,
                min_amount=min_amount,
                max_amount=max_amount,
                allow_first_time_borrowers=allow_first_time_borrowers,
                first_time_borrower_limit=(
                    round_money(first_time_borrower_limit)
                    if first_time_borrower_limit is not None else None
                ),
                interest_rate=to_decimal(interest_rate) if interest_rate is not None else None,
                interest_type=interest_type,
                capital_pool=round_money(capital_pool),
            )
            if existing:
                # Only criteria change; reservations and statistics carry over
                for name in ("capital_reserved", "offers_received", "offers_accepted",
                             "offers_declined", "offers_expired", "acceptance_rate",
                             "total_loans_funded", "total_amount_funded",
                             "total_interest_earned", "last_loan_assigned_at"):
                    setattr(preference, name, getattr(existing, name))
            self.storage.save(self.preferences_table, key, preference.to_dict())
        return preference

    def find_preference(self, key: str) -> Optional[LenderPreference]:
        data = self.storage.load(self.preferences_table, key)
        return LenderPreference.from_dict(data) if data else None

    def get_preference(self, key: str) -> LenderPreference:
        preference = self.find_preference(key)
        if not preference:
            raise NotFoundError(f"Lender preference {key} not found")
        return preference

    def active_preferences(self) -> List[LenderPreference]:
        return [
            LenderPreference.from_dict(data)
            for data in self.storage.find(self.preferences_table, {"is_active": True})
        ]

    def deposit_capital(self, key: str, amount: Decimal) -> LenderPreference:
        """Add funds to a lender's capital pool"""
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("Deposit must be positive")
        self.get_preference(key)
        record = self.storage.increment(self.preferences_table, key, {"capital_pool": amount})
        return LenderPreference.from_dict(record)

    def reserve_capital(self, loan: Loan, now: Optional[datetime] = None) -> bool:
        """
        Commit the loan's principal from the lender's pool.

        Returns:
            True if capital was reserved by this call, False if the lender has
            no preference record or the loan was already reserved
        """
        key = loan.lender_key
        if not key or not self.storage.exists(self.preferences_table, key):
            logger.info("Loan %s lender has no capital account; nothing reserved", loan.id)
            return False
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            if not claim_step(self.storage, "capital_reserve", loan.id):
                return False
            self.storage.increment(self.preferences_table, key, {
                "capital_reserved": loan.amount,
                "total_loans_funded": 1,
                "total_amount_funded": loan.amount,
            })
            self.storage.compare_and_set(
                self.preferences_table, key, {}, {"last_loan_assigned_at": now}
            )
        self.audit_trail.log_event(
            AuditEventType.CAPITAL_RESERVED, "lender", key,
            {"loan_id": loan.id, "amount": loan.amount}
        )
        return True

    def release_capital(self, loan: Loan) -> bool:
        """
        Return a completed loan's principal and add the realized interest.

        Realized interest is what the borrower paid beyond principal, capped at
        the loan's total interest. Reserved capital never goes below zero.

        Returns:
            True if capital was released by this call
        """
        key = loan.lender_key
        if not key or not self.storage.exists(self.preferences_table, key):
            return False
        realized = min(loan.total_interest, max(ZERO, loan.amount_paid - loan.amount))
        with self.storage.atomic():
            if not claim_step(self.storage, "capital_release", loan.id):
                return False
            self.storage.increment(
                self.preferences_table, key, {"capital_reserved": -loan.amount}, floor=ZERO
            )
            self.storage.increment(self.preferences_table, key, {
                "capital_pool": realized,
                "total_interest_earned": realized,
            })
        self.audit_trail.log_event(
            AuditEventType.CAPITAL_RELEASED, "lender", key,
            {"loan_id": loan.id, "principal": loan.amount, "interest": realized}
        )
        logger.info("Released %s principal and %s interest to %s", loan.amount, realized, key)
        return True

    def record_offer_outcome(self, key: str, outcome: str) -> Optional[LenderPreference]:
        """Update a lender's offer statistics and acceptance rate; returns the stored preference"""
        if outcome not in OFFER_OUTCOMES:
            raise ValueError(f"Unknown offer outcome {outcome}")
        if not self.storage.exists(self.preferences_table, key):
            return None
        with self.storage.atomic():
            record = self.storage.increment(self.preferences_table, key, {f"offers_{outcome}": 1})
            resolved = record["offers_accepted"] + record["offers_declined"] + record["offers_expired"]
            if resolved:
                rate = round_money(Decimal(record["offers_accepted"]) * 100 / resolved)
                self.storage.compare_and_set(
                    self.preferences_table, key, {}, {"acceptance_rate": rate}
                )
            return self.get_preference(key)

    # Tier policies

    def set_tier_policy(
        self,
        key: str,
        tier_id: str,
        interest_rate: Decimal,
        max_loan_amount: Optional[Decimal] = None
    ) -> LenderTierPolicy:
        now = datetime.now(timezone.utc)
        policy = LenderTierPolicy(
            id=idempotency_key("tier_policy", key, tier_id),
            created_at=now,
            updated_at=now,
            lender_key=key,
            tier_id=tier_id,
            interest_rate=to_decimal(interest_rate),
            max_loan_amount=to_decimal(max_loan_amount) if max_loan_amount is not None else None,
        )
        self.storage.save(self.tier_policies_table, policy.id, policy.to_dict())
        return policy

    def get_tier_policy(self, key: str, tier_id: str) -> Optional[LenderTierPolicy]:
        data = self.storage.load(self.tier_policies_table, idempotency_key("tier_policy", key, tier_id))
        if not data:
            return None
        policy = LenderTierPolicy.from_dict(data)
        return policy if policy.is_active else None
