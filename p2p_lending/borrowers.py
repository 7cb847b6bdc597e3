"""
Borrower Profile Module

Borrower profiles (tier, repayment counters, verification flags, block and
restriction state) and the per-business trust relationship a borrower builds
with each business lender.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .errors import NotFoundError, ValidationError
from .loans import Loan, LenderType
from .storage import StorageInterface, StorageRecord, claim_step, idempotency_key


logger = logging.getLogger("p2p_lending.borrowers")

MAX_TIER = 6

TIER_NAMES = {
    1: "Starter",
    2: "Bronze",
    3: "Silver",
    4: "Gold",
    5: "Platinum",
    6: "Diamond",
}

# Counter incremented for each payment timing classification
TIMING_COUNTERS = {
    "early": "payments_early",
    "on_time": "payments_on_time",
    "late": "payments_late",
}


@dataclass
class BorrowerProfile(StorageRecord):
    """Platform user in their borrower (and voucher) role"""
    full_name: Optional[str] = None
    borrowing_tier: int = 1
    loans_at_current_tier: int = 0
    total_loans_completed: int = 0
    total_loans_defaulted: int = 0
    total_payments_made: int = 0
    payments_on_time: int = 0
    payments_early: int = 0
    payments_late: int = 0
    payments_missed: int = 0
    # Verification
    kyc_verified: bool = False
    selfie_verified: bool = False
    phone_verified: bool = False
    bank_connected: bool = False
    # Default handling
    is_blocked: bool = False
    debt_cleared_at: Optional[datetime] = None
    restriction_ends_at: Optional[datetime] = None
    # Voucher standing
    vouching_locked: bool = False
    active_vouchee_defaults: int = 0
    vouching_success_rate: Decimal = Decimal("100")

    @property
    def is_first_time_borrower(self) -> bool:
        return self.total_loans_completed == 0


class BorrowerRepository:
    """Borrower profile persistence with idempotent counter updates"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.profiles_table = "borrower_profiles"

    def create_profile(
        self,
        user_id: str,
        full_name: Optional[str] = None,
        created_at: Optional[datetime] = None,
        **attributes: Any
    ) -> BorrowerProfile:
        """
        Create a borrower profile.

        Args:
            user_id: Platform user id (profile id)
            full_name: Legal name; vouching requires one
            created_at: Account creation time, drives tenure
            **attributes: Any other BorrowerProfile field

        Raises:
            ValidationError: If the profile already exists
        """
        if not user_id:
            raise ValidationError("User id is required")
        if self.storage.exists(self.profiles_table, user_id):
            raise ValidationError(f"Profile {user_id} already exists")
        now = datetime.now(timezone.utc)
        profile = BorrowerProfile(
            id=user_id,
            created_at=created_at or now,
            updated_at=now,
            full_name=full_name,
            **attributes
        )
        self.storage.insert_unique(self.profiles_table, user_id, profile.to_dict())
        return profile

    def find_profile(self, user_id: str) -> Optional[BorrowerProfile]:
        data = self.storage.load(self.profiles_table, user_id)
        return BorrowerProfile.from_dict(data) if data else None

    def get_profile(self, user_id: str) -> BorrowerProfile:
        profile = self.find_profile(user_id)
        if not profile:
            raise NotFoundError(f"Borrower profile {user_id} not found")
        return profile

    def update_profile(self, user_id: str, expected: Dict[str, Any], updates: Dict[str, Any]) -> bool:
        return self.storage.compare_and_set(self.profiles_table, user_id, expected, updates)

    def increment(self, user_id: str, deltas: Dict[str, Any]) -> Dict[str, Any]:
        return self.storage.increment(self.profiles_table, user_id, deltas, floor=Decimal("0"))

    def record_payment_stats(self, borrower_id: str, loan_id: str, payment_id: str, timing: str) -> bool:
        """
        Count a payment in the borrower's repayment statistics, once per payment.

        Returns:
            True if the counters were updated by this call
        """
        counter = TIMING_COUNTERS[timing]
        with self.storage.atomic():
            if not self.storage.exists(self.profiles_table, borrower_id):
                logger.warning("No profile for borrower %s; payment stats skipped", borrower_id)
                return False
            if not claim_step(self.storage, "payment_stats", loan_id, payment_id):
                return False
            self.increment(borrower_id, {"total_payments_made": 1, counter: 1})
            return True

    def record_missed_payment(self, borrower_id: str) -> None:
        if self.storage.exists(self.profiles_table, borrower_id):
            self.increment(borrower_id, {"payments_missed": 1})

    def record_loan_completed(self, loan: Loan) -> Dict[str, Any]:
        """
        Count a completed loan and advance the personal-lending tier.

        Completed personal loans count toward the current tier; after
        loans_per_tier_upgrade of them the borrower moves up one tier.

        Returns:
            Dict with 'counted' and 'tier_advanced' flags and the resulting tier
        """
        result = {"counted": False, "tier_advanced": False, "borrowing_tier": None}
        with self.storage.atomic():
            profile = self.find_profile(loan.borrower_id)
            if not profile:
                logger.warning("No profile for borrower %s; completion not counted", loan.borrower_id)
                return result
            if not claim_step(self.storage, "loan_completed_counter", loan.id):
                result["borrowing_tier"] = profile.borrowing_tier
                return result

            deltas = {"total_loans_completed": 1}
            if loan.lender_type == LenderType.PERSONAL:
                deltas["loans_at_current_tier"] = 1
            record = self.increment(loan.borrower_id, deltas)
            result["counted"] = True

            tier = record["borrowing_tier"]
            at_tier = record["loans_at_current_tier"]
            if tier < MAX_TIER and at_tier >= self.config.loans_per_tier_upgrade:
                self.update_profile(
                    loan.borrower_id,
                    {"borrowing_tier": tier},
                    {"borrowing_tier": tier + 1, "loans_at_current_tier": 0}
                )
                tier += 1
                result["tier_advanced"] = True
            result["borrowing_tier"] = tier

        if result["tier_advanced"]:
            self.audit_trail.log_event(
                AuditEventType.BORROWER_TIER_ADVANCED,
                "borrower",
                loan.borrower_id,
                {"borrowing_tier": result["borrowing_tier"], "loan_id": loan.id}
            )
        return result

    def block(self, borrower_id: str, loan_id: str) -> bool:
        """Block a borrower after a default until the debt is cleared"""
        with self.storage.atomic():
            if not self.storage.exists(self.profiles_table, borrower_id):
                return False
            if not claim_step(self.storage, "borrower_default", loan_id):
                return False
            self.increment(borrower_id, {"total_loans_defaulted": 1})
            self.update_profile(borrower_id, {}, {
                "is_blocked": True,
                "debt_cleared_at": None,
                "restriction_ends_at": None,
            })
        self.audit_trail.log_event(
            AuditEventType.BORROWER_BLOCKED, "borrower", borrower_id, {"loan_id": loan_id}
        )
        return True

    def clear_debt(self, borrower_id: str, now: Optional[datetime] = None) -> BorrowerProfile:
        """
        Record that a blocked borrower repaid their debt.

        The borrower stays restricted for restriction_days afterwards.
        """
        now = now or datetime.now(timezone.utc)
        profile = self.get_profile(borrower_id)
        if not profile.is_blocked:
            raise ValidationError(f"Borrower {borrower_id} is not blocked")
        ends = now + timedelta(days=self.config.restriction_days)
        self.update_profile(borrower_id, {"is_blocked": True}, {
            "debt_cleared_at": now,
            "restriction_ends_at": ends,
        })
        self.audit_trail.log_event(
            AuditEventType.DEBT_CLEARED, "borrower", borrower_id,
            {"restriction_ends_at": ends}
        )
        return self.get_profile(borrower_id)


# Business trust relationships

class BusinessTrustStatus(Enum):
    NEW = "new"
    BUILDING = "building"
    GRADUATED = "graduated"
    SUSPENDED = "suspended"


GRADUATION_LOAN_COUNT = 3


@dataclass
class BusinessTrustRecord(StorageRecord):
    """A borrower's track record with one business lender"""
    borrower_id: str
    business_id: str
    status: BusinessTrustStatus = BusinessTrustStatus.NEW
    loan_count: int = 0
    completed_loan_count: int = 0
    total_amount_borrowed: Decimal = Decimal("0")
    total_amount_repaid: Decimal = Decimal("0")
    graduated_at: Optional[datetime] = None


class BusinessTrustService:
    """
    Tracks borrower trust per business lender. Updates are idempotent per loan.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "borrower_business_trust"

    @staticmethod
    def record_id(borrower_id: str, business_id: str) -> str:
        return idempotency_key("business_trust", borrower_id, business_id)

    def get(self, borrower_id: str, business_id: str) -> Optional[BusinessTrustRecord]:
        data = self.storage.load(self.table, self.record_id(borrower_id, business_id))
        return BusinessTrustRecord.from_dict(data) if data else None

    def _ensure(self, borrower_id: str, business_id: str) -> str:
        record_id = self.record_id(borrower_id, business_id)
        if not self.storage.exists(self.table, record_id):
            now = datetime.now(timezone.utc)
            record = BusinessTrustRecord(
                id=record_id, created_at=now, updated_at=now,
                borrower_id=borrower_id, business_id=business_id
            )
            self.storage.save(self.table, record_id, record.to_dict())
        return record_id

    def on_loan_created(self, loan: Loan) -> bool:
        if not loan.business_lender_id:
            return False
        with self.storage.atomic():
            if not claim_step(self.storage, "business_trust_created", loan.id):
                return False
            record_id = self._ensure(loan.borrower_id, loan.business_lender_id)
            self.storage.increment(self.table, record_id, {
                "loan_count": 1,
                "total_amount_borrowed": loan.amount,
            })
            self.storage.compare_and_set(
                self.table, record_id,
                {"status": BusinessTrustStatus.NEW},
                {"status": BusinessTrustStatus.BUILDING}
            )
            return True

    def on_loan_completed(self, loan: Loan) -> bool:
        if not loan.business_lender_id:
            return False
        with self.storage.atomic():
            if not claim_step(self.storage, "business_trust_completed", loan.id):
                return False
            record_id = self._ensure(loan.borrower_id, loan.business_lender_id)
            record = self.storage.increment(self.table, record_id, {
                "completed_loan_count": 1,
                "total_amount_repaid": loan.amount_paid,
            })
            if record["completed_loan_count"] >= GRADUATION_LOAN_COUNT:
                self.storage.compare_and_set(
                    self.table, record_id,
                    {"status": BusinessTrustStatus.BUILDING},
                    {"status": BusinessTrustStatus.GRADUATED, "graduated_at": datetime.now(timezone.utc)}
                )
            return True

    def on_loan_defaulted(self, loan: Loan) -> bool:
        if not loan.business_lender_id:
            return False
        with self.storage.atomic():
            record_id = self._ensure(loan.borrower_id, loan.business_lender_id)
            return self.storage.compare_and_set(
                self.table, record_id, {}, {"status": BusinessTrustStatus.SUSPENDED}
            )
