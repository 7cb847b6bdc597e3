"""
Borrower Eligibility Module

Decides whether a borrower may request a new loan and how much. Checks run
in a fixed order and the first failing check decides the result:

1. blocked after a default with the debt still outstanding
2. inside the post-default restriction window
3. the 75% rule: every open loan must be at least 75% repaid
4. lender limits (business) or the tier ceiling (personal)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import math

from .borrowers import BorrowerProfile, BorrowerRepository, TIER_NAMES
from .config import LendingConfig, get_config
from .lenders import LenderCapitalService
from .loans import Loan, LoanRepository, LoanStatus, LenderType, OPEN_STATUSES
from .money import round_money, round_up_money, to_decimal, ZERO


class EligibilityCode(Enum):
    ELIGIBLE = "eligible"
    BLOCKED = "blocked"
    RESTRICTED = "restricted"
    REPAYMENT_THRESHOLD = "repayment_threshold"
    NO_LENDERS = "no_lenders"
    TIER_LIMIT_REACHED = "tier_limit_reached"
    AMOUNT_EXCEEDS_LIMIT = "amount_exceeds_limit"


@dataclass
class EligibilityResult:
    """Eligibility decision with the figures behind it"""
    can_borrow: bool
    code: EligibilityCode
    reason: str
    max_amount: Optional[Decimal] = None  # None = unlimited
    available_amount: Optional[Decimal] = None
    borrowing_tier: Optional[int] = None
    tier_name: Optional[str] = None
    outstanding_debt: Optional[Decimal] = None
    days_remaining: Optional[int] = None
    blocking_loan_id: Optional[str] = None
    repaid_percentage: Optional[Decimal] = None
    amount_needed: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "can_borrow": self.can_borrow,
            "code": self.code.value,
            "reason": self.reason,
        }
        for name in ("max_amount", "available_amount", "borrowing_tier", "tier_name",
                     "outstanding_debt", "days_remaining", "blocking_loan_id",
                     "repaid_percentage", "amount_needed"):
            value = getattr(self, name)
            if value is not None:
                result[name] = str(value) if isinstance(value, Decimal) else value
        return result


class BorrowerEligibilityCalculator:
    """
    Read-only eligibility checks over borrower, loan and lender state
    """

    def __init__(
        self,
        borrowers: BorrowerRepository,
        loans: LoanRepository,
        lenders: LenderCapitalService,
        config: Optional[LendingConfig] = None
    ):
        self.borrowers = borrowers
        self.loans = loans
        self.lenders = lenders
        self.config = config or get_config()

    def check_eligibility(
        self,
        borrower_id: str,
        lender_type: LenderType,
        requested_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None
    ) -> EligibilityResult:
        """
        Check whether a borrower can request a new loan.

        Args:
            borrower_id: Borrower to check
            lender_type: Personal (tier ceiling) or business (lender limits)
            requested_amount: Amount the borrower wants, if known
            now: Evaluation time (defaults to current UTC time)

        Returns:
            EligibilityResult

        Raises:
            NotFoundError: If the borrower has no profile
        """
        now = now or datetime.now(timezone.utc)
        profile = self.borrowers.get_profile(borrower_id)

        blocked = self._check_blocks(profile, now)
        if blocked:
            return blocked

        open_loans = self.loans.loans_for_borrower(borrower_id, OPEN_STATUSES)
        threshold = self._check_repayment_threshold(open_loans)
        if threshold:
            return threshold

        if lender_type == LenderType.BUSINESS:
            result = self._business_limit(profile)
        else:
            result = self._personal_limit(profile, open_loans)

        if result.can_borrow and requested_amount is not None:
            requested = round_money(requested_amount)
            if result.available_amount is not None and requested > result.available_amount:
                result.can_borrow = False
                result.code = EligibilityCode.AMOUNT_EXCEEDS_LIMIT
                result.reason = (
                    f"Requested amount {requested} exceeds your available limit of {result.available_amount}"
                )
        return result

    def _check_blocks(self, profile: BorrowerProfile, now: datetime) -> Optional[EligibilityResult]:
        if profile.is_blocked and profile.debt_cleared_at is None:
            debt = sum(
                (max(ZERO, loan.amount_remaining)
                 for loan in self.loans.loans_for_borrower(profile.id, [LoanStatus.DEFAULTED])),
                ZERO
            )
            return EligibilityResult(
                can_borrow=False,
                code=EligibilityCode.BLOCKED,
                reason=f"Your account is blocked until the outstanding debt of {debt} is repaid",
                max_amount=ZERO,
                available_amount=ZERO,
                outstanding_debt=debt,
            )
        if profile.debt_cleared_at and profile.restriction_ends_at and profile.restriction_ends_at > now:
            remaining = profile.restriction_ends_at - now
            days = max(1, math.ceil(remaining.total_seconds() / 86400))
            return EligibilityResult(
                can_borrow=False,
                code=EligibilityCode.RESTRICTED,
                reason=f"You can borrow again in {days} days",
                max_amount=ZERO,
                available_amount=ZERO,
                days_remaining=days,
            )
        return None

    def _check_repayment_threshold(self, open_loans: List[Loan]) -> Optional[EligibilityResult]:
        """Deny while any open loan is below the repayment threshold"""
        if not open_loans:
            return None
        threshold = to_decimal(self.config.repayment_threshold)
        weakest = min(open_loans, key=lambda loan: (loan.repaid_ratio, loan.created_at))
        if weakest.repaid_ratio >= threshold:
            return None

        needed = round_up_money(threshold * weakest.amount - weakest.amount_paid)
        percentage = round_money(weakest.repaid_ratio * 100)
        return EligibilityResult(
            can_borrow=False,
            code=EligibilityCode.REPAYMENT_THRESHOLD,
            reason=(
                f"Repay at least {round_money(threshold * 100, 0)}% of your current loan first; "
                f"{needed} more is needed"
            ),
            max_amount=ZERO,
            available_amount=ZERO,
            blocking_loan_id=weakest.id,
            repaid_percentage=percentage,
            amount_needed=needed,
        )

    def _business_limit(self, profile: BorrowerProfile) -> EligibilityResult:
        """Largest limit any active lender offers this borrower category"""
        first_time = profile.is_first_time_borrower
        limits = [
            limit for limit in (p.limit_for(first_time) for p in self.lenders.active_preferences())
            if limit is not None
        ]
        if not limits:
            return EligibilityResult(
                can_borrow=False,
                code=EligibilityCode.NO_LENDERS,
                reason="No lenders are currently available for your borrower category",
                max_amount=ZERO,
                available_amount=ZERO,
            )
        best = max(limits)
        return EligibilityResult(
            can_borrow=True,
            code=EligibilityCode.ELIGIBLE,
            reason="Eligible to borrow from business lenders",
            max_amount=best,
            available_amount=best,
        )

    def _personal_limit(self, profile: BorrowerProfile, open_loans: List[Loan]) -> EligibilityResult:
        """Tier ceiling minus outstanding principal on open personal loans"""
        tier = profile.borrowing_tier
        ceiling = self.config.tier_limits().get(tier)
        tier_name = TIER_NAMES.get(tier)
        if ceiling is None:
            return EligibilityResult(
                can_borrow=True,
                code=EligibilityCode.ELIGIBLE,
                reason=f"{tier_name} tier has no borrowing ceiling",
                borrowing_tier=tier,
                tier_name=tier_name,
            )

        ceiling = to_decimal(ceiling)
        outstanding = sum(
            (max(ZERO, loan.amount - loan.amount_paid)
             for loan in open_loans if loan.lender_type == LenderType.PERSONAL),
            ZERO
        )
        available = max(ZERO, ceiling - outstanding)
        if available <= ZERO:
            return EligibilityResult(
                can_borrow=False,
                code=EligibilityCode.TIER_LIMIT_REACHED,
                reason=f"You have reached the {tier_name} tier limit of {ceiling}",
                max_amount=ceiling,
                available_amount=ZERO,
                borrowing_tier=tier,
                tier_name=tier_name,
            )
        return EligibilityResult(
            can_borrow=True,
            code=EligibilityCode.ELIGIBLE,
            reason=f"Eligible to borrow up to {available} at the {tier_name} tier",
            max_amount=ceiling,
            available_amount=available,
            borrowing_tier=tier,
            tier_name=tier_name,
        )
