"""
Payment Completion Module

The single entry point every payment-success path (provider webhook, cron
auto-pay, confirmed manual payment) calls after money moved. It is safe to
call more than once for the same payment: the payment, the trust event and
each completion sub-step are guarded by their own idempotency keys.

Bookkeeping after the payment (trust, voucher, stats, capital) is
best-effort. A failed sub-step is logged, reported in the result, and
retried by invoking the handler again; it never undoes the payment.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging

from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerRepository, BusinessTrustService
from .config import LendingConfig, get_config
from .errors import AuthorizationError, ConflictError, ValidationError
from .lenders import LenderCapitalService
from .loans import LoanLedger, LoanRepository, LoanStatus
from .logging_config import log_action
from .money import format_amount
from .notifications import NotificationOutbox, NotificationType
from .trust_score import IMPACTS, TrustEventType, TrustScoreService, late_payment_impact
from .vouching import VoucherAccountability


logger = logging.getLogger("p2p_lending.payments")

DateLike = Union[date, datetime]


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time(12, 0), tzinfo=timezone.utc)


def classify_payment_timing(
    due_date: Optional[DateLike],
    paid_date: DateLike,
    early_days: int = 2
) -> Tuple[str, int]:
    """
    Classify a payment against its due date.

    Args:
        due_date: Installment due date; None counts as paid on the due date
        paid_date: When the payment was made
        early_days: Days before due that still count as on time

    Returns:
        Tuple of (timing, days_from_due) where timing is "early", "on_time"
        or "late" and days_from_due is negative for early payments
    """
    if due_date is None:
        return "on_time", 0
    days_from_due = (_as_date(paid_date) - _as_date(due_date)).days
    if days_from_due < -early_days:
        return "early", days_from_due
    if days_from_due <= 0:
        return "on_time", days_from_due
    return "late", days_from_due


@dataclass
class PaymentCompletionResult:
    """Outcome of on_payment_completed"""
    success: bool = True
    trust_score_updated: bool = False
    loan_completed: bool = False
    new_trust_score: Optional[int] = None
    timing: Optional[str] = None
    days_from_due: int = 0
    duplicate: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "trust_score_updated": self.trust_score_updated,
            "loan_completed": self.loan_completed,
            "new_trust_score": self.new_trust_score,
            "timing": self.timing,
            "days_from_due": self.days_from_due,
            "duplicate": self.duplicate,
            "errors": list(self.errors),
        }


@dataclass
class LoanDefaultResult:
    """Outcome of mark_loan_defaulted"""
    loan_id: str
    defaulted: bool = False
    already_defaulted: bool = False
    vouchers_updated: int = 0
    vouchers_locked: int = 0
    errors: List[str] = field(default_factory=list)


class PaymentCompletionHandler:
    """
    Payment success/failure/missed handling and loan completion
    """

    def __init__(
        self,
        storage,
        loans: LoanRepository,
        ledger: LoanLedger,
        trust_scores: TrustScoreService,
        vouching: VoucherAccountability,
        borrowers: BorrowerRepository,
        business_trust: BusinessTrustService,
        lenders: LenderCapitalService,
        outbox: NotificationOutbox,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.loans = loans
        self.ledger = ledger
        self.trust_scores = trust_scores
        self.vouching = vouching
        self.borrowers = borrowers
        self.business_trust = business_trust
        self.lenders = lenders
        self.outbox = outbox
        self.audit_trail = audit_trail
        self.config = config or get_config()

    def on_payment_completed(
        self,
        loan_id: str,
        borrower_id: str,
        payment_id: str,
        amount: Decimal,
        due_date: Optional[DateLike] = None,
        paid_date: Optional[DateLike] = None,
        skip_user_stats: bool = False,
        schedule_entry_id: Optional[str] = None
    ) -> PaymentCompletionResult:
        """
        Apply a successful payment and everything that follows from it.

        Args:
            loan_id: Loan being repaid
            borrower_id: Paying borrower
            payment_id: Provider payment id (idempotency key)
            amount: Amount received
            due_date: Due date the payment is measured against; defaults to
                the due date of the installment the payment settles
            paid_date: When the payment was made (defaults to now)
            skip_user_stats: The caller already counted this payment in the
                borrower's statistics
            schedule_entry_id: Installment being paid (defaults to the
                earliest unpaid one)

        Returns:
            PaymentCompletionResult; duplicate is True when the payment had
            already been recorded

        Raises:
            ValidationError: Missing payment id or non-positive amount
            AuthorizationError: Borrower is not the loan's borrower
            NotFoundError: Unknown loan or schedule entry
            ConflictError: New payment for a loan that is not active, or a payment
                id already applied to another loan
        """
        if not payment_id:
            raise ValidationError("Payment id is required")
        loan = self.loans.get_loan(loan_id)
        if loan.borrower_id != borrower_id:
            raise AuthorizationError(f"Borrower {borrower_id} does not own loan {loan_id}")

        paid_at = _as_datetime(paid_date) if paid_date else datetime.now(timezone.utc)
        payment, duplicate = self.ledger.record_payment(
            loan_id, payment_id, amount, schedule_entry_id=schedule_entry_id, paid_at=paid_at
        )
        result = PaymentCompletionResult(duplicate=duplicate)

        timing, days_from_due = classify_payment_timing(
            due_date or payment.due_date, payment.paid_at, self.config.early_payment_days
        )
        result.timing = timing
        result.days_from_due = days_from_due

        if self.trust_scores.find_payment_timing_event(borrower_id, loan_id, payment_id) is None:
            event = self._step(
                result, "trust_payment_event",
                lambda: self.trust_scores.record_payment_timing(
                    borrower_id, loan_id, payment_id, timing, days_from_due, payment.paid_at
                )
            )
            result.trust_score_updated = event is not None

        self._step(
            result, "voucher_payment_credit",
            lambda: self.vouching.on_vouchee_payment_made(borrower_id, loan_id, payment_id, days_from_due)
        )
        if not skip_user_stats:
            self._step(
                result, "borrower_stats",
                lambda: self.borrowers.record_payment_stats(borrower_id, loan_id, payment_id, timing)
            )

        if not duplicate:
            lender_id = loan.lender_id or loan.business_lender_id
            self.outbox.emit(
                lender_id, NotificationType.PAYMENT_RECEIVED,
                f"Payment of {format_amount(payment.amount, loan.currency)} received",
                {"loan_id": loan_id, "payment_id": payment_id}
            )
            logger.info("Payment %s of %s applied to loan %s (%s, %+d days)",
                        payment_id, payment.amount, loan_id, timing, days_from_due)

        result.loan_completed = self._complete_if_finished(loan_id, result)
        if result.loan_completed:
            result.new_trust_score = self.trust_scores.recalculate(borrower_id)
        else:
            result.new_trust_score = self.trust_scores.get_score(borrower_id)
        return result

    def _complete_if_finished(self, loan_id: str, result: PaymentCompletionResult) -> bool:
        """
        Complete a fully repaid loan.

        Every completion sub-step runs whenever the loan is finished and is
        guarded by its own key, so a re-invocation after a partial failure
        finishes the remaining steps without repeating the others.

        Returns:
            True if the loan's completion event was recorded by this call
        """
        loan = self.loans.get_loan(loan_id)
        if loan.status not in (LoanStatus.ACTIVE, LoanStatus.COMPLETED):
            return False
        finished = (
            loan.status == LoanStatus.COMPLETED
            or loan.amount_remaining <= 0
            or self.loans.count_unpaid(loan_id) == 0
        )
        if not finished:
            return False

        now = datetime.now(timezone.utc)
        transitioned = loan.status == LoanStatus.ACTIVE and self.loans.mark_completed(loan_id, now)
        loan = self.loans.get_loan(loan_id)
        if loan.status != LoanStatus.COMPLETED:
            return False

        event = self._step(
            result, "trust_completion_event",
            lambda: self.trust_scores.record_loan_completion(loan.borrower_id, loan_id, loan.completed_at)
        )
        self._step(result, "business_trust", lambda: self.business_trust.on_loan_completed(loan))
        outcome = self._step(
            result, "voucher_completion",
            lambda: self.vouching.on_vouchee_loan_completed(loan.borrower_id, loan_id)
        )
        if outcome is not None:
            result.errors.extend(outcome.errors)
        self._step(result, "capital_release", lambda: self.lenders.release_capital(loan))
        self._step(result, "borrower_completion", lambda: self.borrowers.record_loan_completed(loan))

        if transitioned:
            self.audit_trail.log_event(
                AuditEventType.LOAN_COMPLETED, "loan", loan_id,
                {"amount_paid": loan.amount_paid, "total_amount": loan.total_amount},
                user_id=loan.borrower_id
            )
            message = f"Loan of {format_amount(loan.amount, loan.currency)} repaid in full"
            self.outbox.emit(loan.borrower_id, NotificationType.LOAN_COMPLETED, message, {"loan_id": loan_id})
            self.outbox.emit(
                loan.lender_id or loan.business_lender_id, NotificationType.LOAN_COMPLETED,
                message, {"loan_id": loan_id}
            )
            log_action(logger, "info", "Loan completed", user_id=loan.borrower_id,
                       loan_id=loan_id, action="complete", resource="loan")
        return event is not None

    def on_payment_failed(
        self,
        loan_id: str,
        borrower_id: str,
        payment_id: str,
        reason: Optional[str] = None
    ) -> bool:
        """
        Record a failed payment attempt. Never raises.

        Returns:
            True if the penalty was recorded by this call
        """
        try:
            event = self.trust_scores.record_event(
                borrower_id,
                TrustEventType.PAYMENT_FAILED,
                self.config.payment_failed_penalty,
                loan_id=loan_id,
                payment_id=payment_id,
                description=reason or "Payment failed",
                metadata={"reason": reason},
                event_id=self.trust_scores.failed_payment_event_id(borrower_id, loan_id, payment_id),
            )
        except Exception:
            logger.error("Could not record failed payment %s for loan %s",
                         payment_id, loan_id, exc_info=True)
            return False
        if event is None:
            return False

        self.outbox.emit(
            borrower_id, NotificationType.PAYMENT_FAILED,
            "Your loan payment could not be processed",
            {"loan_id": loan_id, "payment_id": payment_id, "reason": reason}
        )
        self.audit_trail.log_event(
            AuditEventType.PAYMENT_FAILED, "loan", loan_id,
            {"payment_id": payment_id, "reason": reason}, user_id=borrower_id
        )
        return True

    def on_payment_missed(
        self,
        loan_id: str,
        borrower_id: str,
        days_overdue: int,
        schedule_entry_id: str,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Penalize an overdue installment. The penalty grows with lateness and
        each severity level is applied once per installment. Never raises.

        Returns:
            True if a penalty was recorded by this call
        """
        impact = late_payment_impact(days_overdue)
        missed = impact == IMPACTS["payment_missed"]
        event_type = TrustEventType.PAYMENT_MISSED if missed else TrustEventType.PAYMENT_LATE
        try:
            event = self.trust_scores.record_event(
                borrower_id,
                event_type,
                impact,
                loan_id=loan_id,
                payment_id=schedule_entry_id,
                description=f"Payment {days_overdue} days overdue",
                occurred_at=now,
                metadata={"days_overdue": days_overdue, "schedule_entry_id": schedule_entry_id},
                event_id=self.trust_scores.missed_payment_event_id(
                    borrower_id, loan_id, schedule_entry_id, impact
                ),
            )
        except Exception:
            logger.error("Could not record missed payment %s", schedule_entry_id, exc_info=True)
            return False
        if event is None:
            return False

        if missed:
            try:
                self.borrowers.record_missed_payment(borrower_id)
            except Exception:
                logger.error("Missed payment counter update failed for %s", borrower_id, exc_info=True)
        self.outbox.emit(
            borrower_id, NotificationType.PAYMENT_OVERDUE,
            f"Your loan payment is {days_overdue} days overdue",
            {"loan_id": loan_id, "schedule_entry_id": schedule_entry_id, "days_overdue": days_overdue}
        )
        self.audit_trail.log_event(
            AuditEventType.PAYMENT_MISSED, "loan", loan_id,
            {"schedule_entry_id": schedule_entry_id, "days_overdue": days_overdue, "impact": impact},
            user_id=borrower_id
        )
        return True

    def sweep_missed_payments(self, today: Optional[date] = None) -> Dict[str, int]:
        """
        Scan active loans for unpaid installments past their due date.

        Returns:
            Counters: loans_checked, overdue_entries, penalties_recorded, errors
        """
        today = today or datetime.now(timezone.utc).date()
        now = _as_datetime(today)
        stats = {"loans_checked": 0, "overdue_entries": 0, "penalties_recorded": 0, "errors": 0}

        for loan in self.loans.loans_with_status(LoanStatus.ACTIVE):
            stats["loans_checked"] += 1
            try:
                for entry in self.loans.get_schedule(loan.id):
                    if entry.is_paid or entry.due_date >= today:
                        continue
                    stats["overdue_entries"] += 1
                    self.loans.mark_entry_overdue(entry.id)
                    days_overdue = (today - entry.due_date).days
                    if self.on_payment_missed(loan.id, loan.borrower_id, days_overdue, entry.id, now):
                        stats["penalties_recorded"] += 1
            except Exception:
                logger.error("Missed payment scan failed for loan %s", loan.id, exc_info=True)
                stats["errors"] += 1

        logger.info("Missed payment sweep: %s", stats)
        return stats

    def mark_loan_defaulted(self, loan_id: str, now: Optional[datetime] = None) -> LoanDefaultResult:
        """
        Move an active loan to defaulted and apply the consequences.

        Reserved lender capital stays reserved; recovery is handled outside
        the engine.

        Raises:
            NotFoundError: Unknown loan
            ConflictError: Loan is neither active nor already defaulted
        """
        now = now or datetime.now(timezone.utc)
        loan = self.loans.get_loan(loan_id)
        transitioned = self.loans.transition(
            loan_id, [LoanStatus.ACTIVE], LoanStatus.DEFAULTED, {"defaulted_at": now}
        )
        loan = self.loans.get_loan(loan_id)
        if loan.status != LoanStatus.DEFAULTED:
            raise ConflictError(
                f"Loan {loan_id} is {loan.status.value} and cannot default", loan.state_snapshot()
            )
        result = LoanDefaultResult(loan_id=loan_id, defaulted=transitioned, already_defaulted=not transitioned)

        self._step(
            result, "trust_default_event",
            lambda: self.trust_scores.record_event(
                loan.borrower_id,
                TrustEventType.LOAN_DEFAULTED,
                IMPACTS["loan_defaulted"],
                loan_id=loan_id,
                description="Loan defaulted",
                occurred_at=loan.defaulted_at,
                event_id=self.trust_scores.default_event_id(loan.borrower_id, loan_id),
            )
        )
        outcome = self._step(
            result, "voucher_default",
            lambda: self.vouching.on_vouchee_loan_defaulted(loan.borrower_id, loan_id)
        )
        if outcome is not None:
            result.vouchers_updated = outcome.vouchers_updated
            result.vouchers_locked = outcome.vouchers_locked
            result.errors.extend(outcome.errors)
        self._step(result, "business_trust", lambda: self.business_trust.on_loan_defaulted(loan))
        self._step(result, "borrower_block", lambda: self.borrowers.block(loan.borrower_id, loan_id))

        if transitioned:
            self.audit_trail.log_event(
                AuditEventType.LOAN_DEFAULTED, "loan", loan_id,
                {"amount_paid": loan.amount_paid, "amount_remaining": loan.amount_remaining},
                user_id=loan.borrower_id
            )
            self.outbox.emit(
                loan.borrower_id, NotificationType.LOAN_DEFAULTED,
                "Your loan has been marked as defaulted", {"loan_id": loan_id}
            )
            self.outbox.emit(
                loan.lender_id or loan.business_lender_id, NotificationType.LOAN_DEFAULTED,
                "A loan you funded has been marked as defaulted", {"loan_id": loan_id}
            )
            log_action(logger, "warning", "Loan defaulted", user_id=loan.borrower_id, loan_id=loan_id,
                       action="default", resource="loan", extra={"outstanding": str(loan.amount_remaining)})
        return result

    def _step(self, result: Any, name: str, func: Callable[[], Any]) -> Any:
        """Run a best-effort sub-step, recording its failure on the result"""
        try:
            return func()
        except Exception as e:
            logger.error("Payment sub-step %s failed", name, exc_info=True)
            result.errors.append(f"{name}: {e}")
            return None
