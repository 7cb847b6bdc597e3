"""
Loan Management Module

Loan requests, payment schedules and the payment ledger. Status changes go
through conditional writes so that concurrent callers (webhooks, cron,
user requests) cannot move a loan backwards or apply the same transition twice.
"""

from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .errors import ConflictError, NotFoundError, ValidationError
from .interest import (
    InterestType, RepaymentFrequency, build_schedule, calculate_loan_totals
)
from .money import Currency, round_money, to_decimal, ZERO
from .storage import DuplicateRecordError, StorageInterface, StorageRecord


logger = logging.getLogger("p2p_lending.loans")

MAX_INSTALLMENTS = 104


class LoanStatus(Enum):
    PENDING = "pending"
    MATCHED = "matched"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


# Forward-only transitions; admin overrides bypass the engine
ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.MATCHED, LoanStatus.ACTIVE},
    LoanStatus.MATCHED: {LoanStatus.ACTIVE},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.DEFAULTED: set(),
}

OPEN_STATUSES = (LoanStatus.PENDING, LoanStatus.MATCHED, LoanStatus.ACTIVE)


class LoanMatchStatus(Enum):
    """Where a loan stands in the lender-matching process"""
    NONE = "none"
    OFFERED = "offered"
    MATCHED = "matched"
    NO_MATCH = "no_match"


class LenderType(Enum):
    PERSONAL = "personal"  # Direct loan from an individual, no matching
    BUSINESS = "business"  # Matched against lender preferences


class ScheduleStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class Loan(StorageRecord):
    """P2P loan with its computed totals and repayment progress"""
    borrower_id: str
    amount: Decimal
    currency: str
    lender_type: LenderType
    interest_rate: Decimal
    interest_type: InterestType
    repayment_frequency: RepaymentFrequency
    total_installments: int
    total_interest: Decimal
    total_amount: Decimal
    status: LoanStatus = LoanStatus.PENDING
    match_status: LoanMatchStatus = LoanMatchStatus.NONE
    amount_paid: Decimal = ZERO
    amount_remaining: Decimal = ZERO
    lender_id: Optional[str] = None
    business_lender_id: Optional[str] = None
    invited_lender_id: Optional[str] = None  # Personal loans: the lender asked directly
    requested_interest_rate: Optional[Decimal] = None
    interest_rate_source: Optional[str] = None
    current_match_id: Optional[str] = None
    purpose: Optional[str] = None
    start_date: Optional[date] = None
    funded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None

    @property
    def lender_key(self) -> Optional[str]:
        """Storage key of the assigned lender's preference record"""
        if self.lender_id:
            return f"user:{self.lender_id}"
        if self.business_lender_id:
            return f"business:{self.business_lender_id}"
        return None

    @property
    def repaid_ratio(self) -> Decimal:
        """Fraction of principal repaid so far"""
        if self.amount <= ZERO:
            return Decimal("1")
        return self.amount_paid / self.amount

    def state_snapshot(self) -> Dict[str, Any]:
        """Current state reported back on conflicts"""
        return {
            "loan_id": self.id,
            "status": self.status.value,
            "match_status": self.match_status.value,
            "lender_id": self.lender_id,
            "business_lender_id": self.business_lender_id,
            "current_match_id": self.current_match_id,
        }


@dataclass
class PaymentScheduleEntry(StorageRecord):
    """One installment of a loan's repayment schedule"""
    loan_id: str
    installment_number: int
    due_date: date
    amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    amount_paid: Decimal = ZERO
    is_paid: bool = False
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_at: Optional[datetime] = None
    payment_id: Optional[str] = None


@dataclass
class LoanPayment(StorageRecord):
    """A money movement applied to a loan; the id is the provider's payment id"""
    loan_id: str
    borrower_id: str
    amount: Decimal
    paid_at: datetime
    schedule_entry_id: Optional[str] = None
    due_date: Optional[date] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class LoanRepository:
    """
    Loan persistence and status transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.loans_table = "loans"
        self.schedule_table = "payment_schedules"

    def create_loan_request(
        self,
        borrower_id: str,
        amount: Decimal,
        total_installments: int,
        repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY,
        lender_type: LenderType = LenderType.BUSINESS,
        currency: str = "USD",
        interest_rate: Optional[Decimal] = None,
        interest_type: InterestType = InterestType.SIMPLE,
        invited_lender_id: Optional[str] = None,
        purpose: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Loan:
        """
        Create a pending loan request with a provisional schedule.

        The schedule is regenerated with the resolved rate once a lender is
        assigned.

        Args:
            borrower_id: Requesting borrower
            amount: Principal requested
            total_installments: Number of installments
            repayment_frequency: Weekly, biweekly or monthly
            lender_type: Personal (direct) or business (matched)
            currency: ISO currency code
            interest_rate: Rate proposed by the borrower, if any
            interest_type: Simple or compound
            invited_lender_id: For personal loans, the lender asked directly
            purpose: Free-text purpose
            now: Creation time (defaults to current UTC time)

        Returns:
            Created Loan

        Raises:
            ValidationError: If any term is invalid
        """
        if not borrower_id:
            raise ValidationError("Borrower is required")
        try:
            amount = round_money(amount)
        except ValueError:
            raise ValidationError("Amount must be numeric", {"amount": str(amount)})
        if amount <= ZERO:
            raise ValidationError("Amount must be positive", {"amount": str(amount)})
        if not 1 <= total_installments <= MAX_INSTALLMENTS:
            raise ValidationError(
                f"Installments must be between 1 and {MAX_INSTALLMENTS}",
                {"total_installments": total_installments}
            )
        try:
            Currency.from_code(currency)
        except ValueError as e:
            raise ValidationError(str(e))
        if invited_lender_id and lender_type != LenderType.PERSONAL:
            raise ValidationError("Only personal loans can invite a lender directly")
        if invited_lender_id == borrower_id:
            raise ValidationError("Borrowers cannot lend to themselves")

        try:
            requested_rate = to_decimal(interest_rate) if interest_rate is not None else None
        except ValueError:
            raise ValidationError("Interest rate must be numeric", {"interest_rate": str(interest_rate)})
        rate = requested_rate if requested_rate is not None else to_decimal(self.config.default_interest_rate)
        totals = calculate_loan_totals(amount, rate, total_installments, repayment_frequency, interest_type)

        now = now or datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            borrower_id=borrower_id,
            amount=amount,
            currency=currency.upper(),
            lender_type=lender_type,
            interest_rate=rate,
            interest_type=interest_type,
            repayment_frequency=repayment_frequency,
            total_installments=total_installments,
            total_interest=totals.total_interest,
            total_amount=totals.total_amount,
            amount_remaining=totals.total_amount,
            invited_lender_id=invited_lender_id,
            requested_interest_rate=requested_rate,
            purpose=purpose,
        )

        with self.storage.atomic():
            self.storage.insert_unique(self.loans_table, loan.id, loan.to_dict())
            self._write_schedule(loan, now.date())

        self.audit_trail.log_event(
            AuditEventType.LOAN_REQUESTED,
            "loan",
            loan.id,
            {
                "borrower_id": borrower_id,
                "amount": amount,
                "lender_type": lender_type.value,
                "installments": total_installments,
            },
            user_id=borrower_id
        )
        logger.info("Loan %s requested by %s for %s", loan.id, borrower_id, amount)
        return loan

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID, raising NotFoundError if missing"""
        loan = self.find_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def loans_for_borrower(
        self,
        borrower_id: str,
        statuses: Optional[Iterable[LoanStatus]] = None
    ) -> List[Loan]:
        loans = [
            Loan.from_dict(data)
            for data in self.storage.find(self.loans_table, {"borrower_id": borrower_id})
        ]
        if statuses is not None:
            wanted = set(statuses)
            loans = [loan for loan in loans if loan.status in wanted]
        return sorted(loans, key=lambda loan: loan.created_at)

    def loans_with_status(self, status: LoanStatus) -> List[Loan]:
        return [
            Loan.from_dict(data)
            for data in self.storage.find(self.loans_table, {"status": status.value})
        ]

    def transition(
        self,
        loan_id: str,
        from_statuses: Iterable[LoanStatus],
        to_status: LoanStatus,
        updates: Optional[Dict[str, Any]] = None,
        expected: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Conditionally move a loan to a new status.

        Args:
            loan_id: Loan to update
            from_statuses: Statuses the loan may currently be in
            to_status: Target status
            updates: Extra fields to write with the transition
            expected: Extra fields that must still hold their values

        Returns:
            True if this call performed the transition
        """
        for from_status in from_statuses:
            if to_status not in ALLOWED_TRANSITIONS[from_status]:
                raise ValueError(f"Illegal loan transition {from_status.value} -> {to_status.value}")
            changes = dict(updates or {})
            changes["status"] = to_status
            conditions = dict(expected or {})
            conditions["status"] = from_status
            if self.storage.compare_and_set(self.loans_table, loan_id, conditions, changes):
                return True
        return False

    def update_fields(self, loan_id: str, expected: Dict[str, Any], updates: Dict[str, Any]) -> bool:
        """Conditional write of non-status fields (match bookkeeping)"""
        return self.storage.compare_and_set(self.loans_table, loan_id, expected, updates)

    def mark_completed(self, loan_id: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.transition(
            loan_id, [LoanStatus.ACTIVE], LoanStatus.COMPLETED, {"completed_at": now}
        )

    # Schedule

    def get_schedule(self, loan_id: str) -> List[PaymentScheduleEntry]:
        """Schedule entries ordered by installment number"""
        entries = [
            PaymentScheduleEntry.from_dict(data)
            for data in self.storage.find(self.schedule_table, {"loan_id": loan_id})
        ]
        return sorted(entries, key=lambda entry: entry.installment_number)

    def get_schedule_entry(self, entry_id: str) -> PaymentScheduleEntry:
        data = self.storage.load(self.schedule_table, entry_id)
        if not data:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        return PaymentScheduleEntry.from_dict(data)

    def count_unpaid(self, loan_id: str) -> int:
        return sum(1 for entry in self.get_schedule(loan_id) if not entry.is_paid)

    def regenerate_schedule(self, loan: Loan, start_date: date) -> List[PaymentScheduleEntry]:
        """Replace the loan's schedule; callers hold a transaction"""
        for entry in self.get_schedule(loan.id):
            self.storage.delete(self.schedule_table, entry.id)
        return self._write_schedule(loan, start_date)

    def _write_schedule(self, loan: Loan, start_date: date) -> List[PaymentScheduleEntry]:
        now = datetime.now(timezone.utc)
        lines = build_schedule(
            loan.amount,
            loan.interest_rate,
            loan.total_installments,
            loan.repayment_frequency,
            loan.interest_type,
            start_date
        )
        entries = []
        for line in lines:
            entry = PaymentScheduleEntry(
                id=f"{loan.id}:{line.installment_number}",
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=line.installment_number,
                due_date=line.due_date,
                amount=line.amount,
                principal_amount=line.principal_amount,
                interest_amount=line.interest_amount,
            )
            self.storage.save(self.schedule_table, entry.id, entry.to_dict())
            entries.append(entry)
        return entries

    def mark_entry_overdue(self, entry_id: str) -> bool:
        return self.storage.compare_and_set(
            self.schedule_table, entry_id,
            {"status": ScheduleStatus.PENDING, "is_paid": False},
            {"status": ScheduleStatus.OVERDUE}
        )


class LoanLedger:
    """
    Applies money movements to loans.

    A payment id is recorded at most once; the loan's paid and remaining
    balances move by the same amount inside one transaction so
    amount_remaining == total_amount - amount_paid holds after every write.
    """

    def __init__(self, storage: StorageInterface, loans: LoanRepository, audit_trail: AuditTrail):
        self.storage = storage
        self.loans = loans
        self.audit_trail = audit_trail
        self.payments_table = "loan_payments"

    def record_payment(
        self,
        loan_id: str,
        payment_id: str,
        amount: Decimal,
        schedule_entry_id: Optional[str] = None,
        paid_at: Optional[datetime] = None
    ) -> Tuple[LoanPayment, bool]:
        """
        Record a successful payment against a loan.

        Args:
            loan_id: Loan being repaid
            payment_id: Provider payment id (idempotency key)
            amount: Amount received
            schedule_entry_id: Installment the payment is for; defaults to the
                earliest unpaid installment
            paid_at: When the money moved

        Returns:
            Tuple of (payment, duplicate) where duplicate is True if this
            payment id had already been recorded

        Raises:
            ValidationError: If the amount is not positive
            NotFoundError: If the loan or schedule entry does not exist
            ConflictError: If the loan is not accepting payments, or the
                payment id was already recorded against another loan
        """
        if not payment_id:
            raise ValidationError("Payment id is required")
        try:
            amount = round_money(amount)
        except ValueError:
            raise ValidationError("Amount must be numeric", {"amount": str(amount)})
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", {"amount": str(amount)})
        paid_at = paid_at or datetime.now(timezone.utc)

        with self.storage.atomic():
            existing = self.storage.load(self.payments_table, payment_id)
            if existing:
                return self._duplicate_of(existing, loan_id), True

            loan = self.loans.get_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise ConflictError(
                    f"Loan {loan_id} is {loan.status.value} and cannot accept payments",
                    loan.state_snapshot()
                )

            entry = self._select_entry(loan_id, schedule_entry_id)
            payment = LoanPayment(
                id=payment_id,
                created_at=paid_at,
                updated_at=paid_at,
                loan_id=loan_id,
                borrower_id=loan.borrower_id,
                amount=amount,
                paid_at=paid_at,
                schedule_entry_id=entry.id if entry else None,
                due_date=entry.due_date if entry else None,
            )
            try:
                self.storage.insert_unique(self.payments_table, payment.id, payment.to_dict())
            except DuplicateRecordError:
                existing = self.storage.load(self.payments_table, payment_id)
                return self._duplicate_of(existing, loan_id), True

            if entry:
                entry_paid = entry.amount_paid + amount
                updates = {"amount_paid": entry_paid, "payment_id": payment_id}
                if entry_paid >= entry.amount:
                    updates.update({"is_paid": True, "status": ScheduleStatus.PAID, "paid_at": paid_at})
                self.storage.compare_and_set(
                    self.loans.schedule_table, entry.id, {"is_paid": False}, updates
                )

            self.storage.increment(self.loans.loans_table, loan_id, {
                "amount_paid": amount,
                "amount_remaining": -amount,
            })

        self.audit_trail.log_event(
            AuditEventType.PAYMENT_RECORDED,
            "loan",
            loan_id,
            {"payment_id": payment_id, "amount": amount, "schedule_entry_id": payment.schedule_entry_id},
            user_id=payment.borrower_id
        )
        return payment, False

    @staticmethod
    def _duplicate_of(existing: Dict[str, Any], loan_id: str) -> LoanPayment:
        """A replayed payment id is only a duplicate for the loan it was applied to"""
        payment = LoanPayment.from_dict(existing)
        if payment.loan_id != loan_id:
            raise ConflictError(
                f"Payment {payment.id} was already applied to loan {payment.loan_id}",
                {"payment_id": payment.id, "loan_id": payment.loan_id}
            )
        return payment

    def _select_entry(self, loan_id: str, schedule_entry_id: Optional[str]) -> Optional[PaymentScheduleEntry]:
        if schedule_entry_id:
            entry = self.loans.get_schedule_entry(schedule_entry_id)
            if entry.loan_id != loan_id:
                raise ValidationError(
                    f"Schedule entry {schedule_entry_id} does not belong to loan {loan_id}"
                )
            return entry if not entry.is_paid else None
        for entry in self.loans.get_schedule(loan_id):
            if not entry.is_paid:
                return entry
        return None

    def get_payment(self, payment_id: str) -> Optional[LoanPayment]:
        data = self.storage.load(self.payments_table, payment_id)
        return LoanPayment.from_dict(data) if data else None

    def payments_for_loan(self, loan_id: str) -> List[LoanPayment]:
        payments = [
            LoanPayment.from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        return sorted(payments, key=lambda p: p.paid_at)
