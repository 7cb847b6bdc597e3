"""
Lending Engine

Wires storage, audit and every lending service together. Web handlers, cron
ticks and webhooks each build or share an engine; all coordination between
them goes through the store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .audit import AuditTrail
from .borrowers import BorrowerRepository, BusinessTrustService
from .config import LendingConfig, get_config
from .eligibility import BorrowerEligibilityCalculator, EligibilityResult
from .errors import IneligibleError, ValidationError
from .interest import InterestType, RepaymentFrequency
from .lenders import LenderCapitalService
from .loans import Loan, LoanLedger, LoanRepository, LoanStatus, LenderType
from .logging_config import get_logger
from .matching import LoanMatch, LoanMatchingEngine
from .money import round_money
from .notifications import (
    InAppChannelProvider, LogChannelProvider, NotificationOutbox, WebhookChannelProvider
)
from .payments import PaymentCompletionHandler
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .trust_score import TrustScoreService
from .vouching import VoucherAccountability


logger = get_logger("p2p_lending.engine")


@dataclass
class LoanRequestOutcome:
    """A created loan request with its offers (business loans only)"""
    loan: Loan
    eligibility: EligibilityResult
    offers: List[LoanMatch] = field(default_factory=list)


class LendingEngine:
    """Lending engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LendingConfig] = None,
        use_sqlite: Optional[bool] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite if use_sqlite is None else use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.outbox = NotificationOutbox(self.storage, self._create_providers())
        self.loans = LoanRepository(self.storage, self.audit_trail, self.config)
        self.ledger = LoanLedger(self.storage, self.loans, self.audit_trail)
        self.borrowers = BorrowerRepository(self.storage, self.audit_trail, self.config)
        self.business_trust = BusinessTrustService(self.storage)
        self.lenders = LenderCapitalService(self.storage, self.audit_trail)
        self.trust_scores = TrustScoreService(self.storage, self.borrowers, self.audit_trail)
        self.vouching = VoucherAccountability(
            self.storage, self.trust_scores, self.borrowers, self.outbox,
            self.audit_trail, self.config
        )

        # Initialize lifecycle services
        self.eligibility = BorrowerEligibilityCalculator(
            self.borrowers, self.loans, self.lenders, self.config
        )
        self.matching = LoanMatchingEngine(
            self.storage, self.loans, self.lenders, self.borrowers, self.vouching,
            self.business_trust, self.outbox, self.audit_trail, self.config
        )
        self.payments = PaymentCompletionHandler(
            self.storage, self.loans, self.ledger, self.trust_scores, self.vouching,
            self.borrowers, self.business_trust, self.lenders, self.outbox,
            self.audit_trail, self.config
        )

    def _create_providers(self):
        """Create notification channels based on configuration"""
        providers = [LogChannelProvider(), InAppChannelProvider(self.storage)]
        if self.config.notification_webhook_url:
            providers.append(WebhookChannelProvider(
                self.config.notification_webhook_url,
                timeout=self.config.notification_timeout
            ))
        return providers

    def request_loan(
        self,
        borrower_id: str,
        amount: Decimal,
        total_installments: int,
        lender_type: LenderType = LenderType.BUSINESS,
        repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY,
        currency: str = "USD",
        interest_rate: Optional[Decimal] = None,
        interest_type: InterestType = InterestType.SIMPLE,
        invited_lender_id: Optional[str] = None,
        purpose: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> LoanRequestOutcome:
        """
        Check eligibility, create the loan request and, for business loans,
        offer it to the best-ranked lenders.

        Raises:
            IneligibleError: Borrower may not take this loan; details carry
                the eligibility result
            ValidationError: Invalid loan terms
        """
        now = now or datetime.now(timezone.utc)
        try:
            amount = round_money(amount)
        except ValueError:
            raise ValidationError("Amount must be numeric", {"amount": str(amount)})
        eligibility = self.eligibility.check_eligibility(borrower_id, lender_type, amount, now)
        if not eligibility.can_borrow:
            raise IneligibleError(eligibility.reason, eligibility.to_dict())

        loan = self.loans.create_loan_request(
            borrower_id,
            amount,
            total_installments,
            repayment_frequency=repayment_frequency,
            lender_type=lender_type,
            currency=currency,
            interest_rate=interest_rate,
            interest_type=interest_type,
            invited_lender_id=invited_lender_id,
            purpose=purpose,
            now=now,
        )
        offers = []
        if lender_type == LenderType.BUSINESS:
            offers = self.matching.create_offers(loan.id, now)
            loan = self.loans.get_loan(loan.id)
        return LoanRequestOutcome(loan=loan, eligibility=eligibility, offers=offers)

    def clear_borrower_debt(self, borrower_id: str, now: Optional[datetime] = None):
        """
        Record that a blocked borrower repaid their debt and release the
        vouchers held accountable for their defaulted loans.
        """
        profile = self.borrowers.clear_debt(borrower_id, now)
        for loan in self.loans.loans_for_borrower(borrower_id, [LoanStatus.DEFAULTED]):
            try:
                self.vouching.on_vouchee_default_resolved(borrower_id, loan.id)
            except Exception:
                logger.error("Voucher release failed for loan %s", loan.id, exc_info=True)
        return profile

    def close(self) -> None:
        self.storage.close()
