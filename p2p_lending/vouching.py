"""
Voucher Accountability Module

Tracks vouches (a voucher endorsing a vouchee) and keeps the voucher's
standing in step with the vouchee's loans.

Each (vouch, loan) pair has a link record whose state moves
active -> completed or active -> defaulted through conditional writes. The
link is what makes the loan counters move exactly once per loan, however many
acceptance or completion paths invoke this module.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerRepository
from .config import LendingConfig, get_config
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .money import round_money
from .notifications import NotificationOutbox, NotificationType
from .storage import (
    DuplicateRecordError, StorageInterface, StorageRecord, claim_step, idempotency_key
)
from .trust_score import IMPACTS, TrustEventType, TrustScoreService


logger = logging.getLogger("p2p_lending.vouching")

MIN_STRENGTH = 1
MAX_STRENGTH = 10
STRONG_VOUCH_STRENGTH = 7


class VouchType(Enum):
    CHARACTER = "character"
    EMPLOYMENT = "employment"
    FAMILY = "family"
    GUARANTEE = "guarantee"


BASE_STRENGTH = {
    VouchType.CHARACTER: 4,
    VouchType.EMPLOYMENT: 5,
    VouchType.FAMILY: 5,
    VouchType.GUARANTEE: 7,
}


class VouchStatus(Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class LinkState(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


@dataclass
class Vouch(StorageRecord):
    """Voucher -> vouchee endorsement with the vouchee's loan outcomes"""
    voucher_id: str
    vouchee_id: str
    vouch_type: VouchType
    vouch_strength: int
    trust_score_boost: int
    relationship: str = ""
    known_years: int = 0
    status: VouchStatus = VouchStatus.ACTIVE
    loans_active: int = 0
    loans_completed: int = 0
    loans_defaulted: int = 0
    ontime_payments: int = 0
    success_rate: Decimal = Decimal("100")
    revoked_at: Optional[datetime] = None


@dataclass
class VouchLoanLink(StorageRecord):
    """Tracks one vouch's exposure to one of the vouchee's loans"""
    vouch_id: str
    voucher_id: str
    vouchee_id: str
    loan_id: str
    state: LinkState = LinkState.ACTIVE


@dataclass
class VouchingEligibility:
    can_vouch: bool
    reason: Optional[str] = None


@dataclass
class VoucheeOutcome:
    """Summary of a vouchee loan pipeline run"""
    vouchers_updated: int = 0
    vouchers_notified: int = 0
    vouchers_locked: int = 0
    trust_events_recorded: int = 0
    errors: List[str] = field(default_factory=list)


def success_rate(completed: int, defaulted: int) -> Decimal:
    """Percentage of resolved vouchee loans repaid; 100 before any outcome"""
    resolved = completed + defaulted
    if resolved == 0:
        return Decimal("100")
    return round_money(Decimal(completed) * 100 / resolved)


def success_multiplier(rate: Decimal) -> Decimal:
    """Scales a vouch's strength by the voucher's track record"""
    if rate >= 100:
        return Decimal("1.0")
    if rate >= 80:
        return Decimal("0.9")
    if rate >= 60:
        return Decimal("0.75")
    if rate >= 40:
        return Decimal("0.55")
    return Decimal("0.35")


def calculate_vouch_strength(vouch_type: VouchType, known_years: int) -> int:
    return max(MIN_STRENGTH, min(MAX_STRENGTH, BASE_STRENGTH[vouch_type] + min(known_years, 3)))


def simple_trust_tier(vouch_count: int) -> str:
    """Trust tier from the number of active vouches received"""
    if vouch_count >= 11:
        return "tier_4"
    if vouch_count >= 6:
        return "tier_3"
    if vouch_count >= 3:
        return "tier_2"
    return "tier_1"


class VoucherAccountability:
    """
    Vouch lifecycle and voucher accountability for vouchee loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        trust_scores: TrustScoreService,
        borrowers: BorrowerRepository,
        outbox: NotificationOutbox,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.trust_scores = trust_scores
        self.borrowers = borrowers
        self.outbox = outbox
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.vouches_table = "vouches"
        self.links_table = "vouch_loan_links"

    # Vouch lifecycle

    def check_vouching_eligibility(self, voucher_id: str, now: Optional[datetime] = None) -> VouchingEligibility:
        """Account age, a legal name and an unlocked voucher standing are required"""
        now = now or datetime.now(timezone.utc)
        profile = self.borrowers.find_profile(voucher_id)
        if not profile:
            return VouchingEligibility(False, "User profile not found")
        age_days = (now - profile.created_at).days
        if age_days < self.config.min_voucher_account_age_days:
            return VouchingEligibility(
                False,
                f"Account must be at least {self.config.min_voucher_account_age_days} days old to vouch"
            )
        if not profile.full_name:
            return VouchingEligibility(False, "A full name is required to vouch")
        if profile.vouching_locked:
            return VouchingEligibility(
                False, "Vouching is locked while people you vouched for are in default"
            )
        return VouchingEligibility(True)

    def create_vouch(
        self,
        voucher_id: str,
        vouchee_id: str,
        vouch_type: VouchType = VouchType.CHARACTER,
        relationship: str = "",
        known_years: int = 0,
        now: Optional[datetime] = None
    ) -> Vouch:
        """
        Create a vouch and credit the vouchee's social score.

        Raises:
            ValidationError: Self-vouch, ineligible voucher or unknown vouchee
            ConflictError: An active vouch for this pair already exists
        """
        if voucher_id == vouchee_id:
            raise ValidationError("You cannot vouch for yourself")
        if not self.borrowers.find_profile(vouchee_id):
            raise NotFoundError(f"User {vouchee_id} not found")
        eligibility = self.check_vouching_eligibility(voucher_id, now)
        if not eligibility.can_vouch:
            raise ValidationError(eligibility.reason)
        if known_years < 0:
            raise ValidationError("Known years cannot be negative")

        existing = self.storage.find(self.vouches_table, {
            "voucher_id": voucher_id,
            "vouchee_id": vouchee_id,
            "status": VouchStatus.ACTIVE.value,
        })
        if existing:
            raise ConflictError(
                "You already have an active vouch for this user",
                {"vouch_id": existing[0]["id"], "status": VouchStatus.ACTIVE.value}
            )

        now = now or datetime.now(timezone.utc)
        strength = calculate_vouch_strength(vouch_type, known_years)
        boost = IMPACTS["vouch_received_strong"] if strength >= STRONG_VOUCH_STRENGTH else IMPACTS["vouch_received"]
        vouch = Vouch(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            voucher_id=voucher_id,
            vouchee_id=vouchee_id,
            vouch_type=vouch_type,
            vouch_strength=strength,
            trust_score_boost=boost,
            relationship=relationship,
            known_years=known_years,
        )
        self.storage.insert_unique(self.vouches_table, vouch.id, vouch.to_dict())

        self.trust_scores.record_event(
            vouchee_id, TrustEventType.VOUCH_RECEIVED, boost,
            related_user_id=voucher_id,
            description=f"{vouch_type.value.title()} vouch received",
            event_id=idempotency_key("vouch_received", vouch.id),
        )
        self.outbox.emit(vouchee_id, NotificationType.VOUCH_RECEIVED,
                         "Someone vouched for you", {"vouch_id": vouch.id})
        self.audit_trail.log_event(
            AuditEventType.VOUCH_CREATED, "vouch", vouch.id,
            {"voucher_id": voucher_id, "vouchee_id": vouchee_id, "strength": strength},
            user_id=voucher_id
        )
        return vouch

    def revoke_vouch(self, vouch_id: str, actor_id: str) -> Vouch:
        vouch = self.get_vouch(vouch_id)
        if actor_id != vouch.voucher_id:
            raise AuthorizationError("Only the voucher can revoke a vouch")
        revoked = self.storage.compare_and_set(
            self.vouches_table, vouch_id,
            {"status": VouchStatus.ACTIVE},
            {"status": VouchStatus.REVOKED, "revoked_at": datetime.now(timezone.utc)}
        )
        if not revoked:
            raise ConflictError("Vouch is not active", {"vouch_id": vouch_id, "status": vouch.status.value})

        self.trust_scores.record_event(
            vouch.vouchee_id, TrustEventType.VOUCH_REVOKED, -vouch.trust_score_boost,
            related_user_id=vouch.voucher_id,
            description="Vouch revoked",
            event_id=idempotency_key("vouch_revoked", vouch.id),
        )
        self.audit_trail.log_event(
            AuditEventType.VOUCH_REVOKED, "vouch", vouch_id, {}, user_id=actor_id
        )
        return self.get_vouch(vouch_id)

    def get_vouch(self, vouch_id: str) -> Vouch:
        data = self.storage.load(self.vouches_table, vouch_id)
        if not data:
            raise NotFoundError(f"Vouch {vouch_id} not found")
        return Vouch.from_dict(data)

    def active_vouches_for(self, vouchee_id: str) -> List[Vouch]:
        vouches = [
            Vouch.from_dict(data)
            for data in self.storage.find(self.vouches_table, {
                "vouchee_id": vouchee_id,
                "status": VouchStatus.ACTIVE.value,
            })
        ]
        return sorted(vouches, key=lambda v: v.created_at)

    def vouches_given_by(self, voucher_id: str) -> List[Vouch]:
        return [
            Vouch.from_dict(data)
            for data in self.storage.find(self.vouches_table, {"voucher_id": voucher_id})
        ]

    def trust_tier_for(self, user_id: str) -> str:
        return simple_trust_tier(len(self.active_vouches_for(user_id)))

    # Links

    @staticmethod
    def link_id(vouch_id: str, loan_id: str) -> str:
        return idempotency_key("vouch_loan", vouch_id, loan_id)

    def get_link(self, vouch_id: str, loan_id: str) -> Optional[VouchLoanLink]:
        data = self.storage.load(self.links_table, self.link_id(vouch_id, loan_id))
        return VouchLoanLink.from_dict(data) if data else None

    def _insert_link(self, vouch: Vouch, loan_id: str, state: LinkState) -> bool:
        now = datetime.now(timezone.utc)
        link = VouchLoanLink(
            id=self.link_id(vouch.id, loan_id),
            created_at=now,
            updated_at=now,
            vouch_id=vouch.id,
            voucher_id=vouch.voucher_id,
            vouchee_id=vouch.vouchee_id,
            loan_id=loan_id,
            state=state,
        )
        try:
            self.storage.insert_unique(self.links_table, link.id, link.to_dict())
        except DuplicateRecordError:
            return False
        return True

    def _vouches_exposed_to(self, vouchee_id: str, loan_id: str) -> List[Vouch]:
        """Active vouches plus any vouch (even revoked since) linked to the loan"""
        vouches = {v.id: v for v in self.active_vouches_for(vouchee_id)}
        for data in self.storage.find(self.links_table, {"loan_id": loan_id}):
            if data["vouch_id"] not in vouches:
                vouches[data["vouch_id"]] = self.get_vouch(data["vouch_id"])
        return sorted(vouches.values(), key=lambda v: v.created_at)

    def _refresh_success_rate(self, vouch_id: str) -> Decimal:
        record = self.storage.load(self.vouches_table, vouch_id)
        rate = success_rate(record["loans_completed"], record["loans_defaulted"])
        self.storage.compare_and_set(self.vouches_table, vouch_id, {}, {"success_rate": rate})
        return rate

    def _refresh_voucher_standing(self, voucher_id: str) -> None:
        if not self.borrowers.find_profile(voucher_id):
            return
        vouches = self.vouches_given_by(voucher_id)
        rate = success_rate(
            sum(v.loans_completed for v in vouches),
            sum(v.loans_defaulted for v in vouches)
        )
        self.borrowers.update_profile(voucher_id, {}, {"vouching_success_rate": rate})

    # Vouchee loan pipelines

    def on_vouchee_new_loan(self, vouchee_id: str, loan_id: str) -> int:
        """
        Count a newly funded loan against every active vouch for the borrower.

        Safe to call again for the same loan: a vouch already linked to the
        loan is left alone.

        Returns:
            Number of vouches whose loans_active was incremented
        """
        incremented = 0
        for vouch in self.active_vouches_for(vouchee_id):
            with self.storage.atomic():
                if not self._insert_link(vouch, loan_id, LinkState.ACTIVE):
                    continue
                self.storage.increment(self.vouches_table, vouch.id, {"loans_active": 1})
            incremented += 1
        if incremented:
            logger.info("Loan %s linked to %d vouches for %s", loan_id, incremented, vouchee_id)
        return incremented

    def on_vouchee_payment_made(
        self,
        vouchee_id: str,
        loan_id: str,
        payment_id: str,
        days_from_due: int
    ) -> int:
        """
        Credit vouches when the vouchee pays on time or early.

        Returns:
            Number of vouches credited by this call
        """
        if days_from_due > 0:
            return 0
        credited = 0
        for vouch in self.active_vouches_for(vouchee_id):
            with self.storage.atomic():
                if not claim_step(self.storage, "vouch_payment_credit", vouch.id, loan_id, payment_id):
                    continue
                self.storage.increment(self.vouches_table, vouch.id, {"ontime_payments": 1})
            credited += 1
        return credited

    def on_vouchee_loan_completed(self, vouchee_id: str, loan_id: str) -> VoucheeOutcome:
        """
        Reward every voucher exposed to a completed loan.

        Moves loans_active -> loans_completed once per (vouch, loan), refreshes
        success rates, records the voucher's trust reward and notifies them.
        A failure for one voucher is recorded and the others still run.
        """
        outcome = VoucheeOutcome()
        for vouch in self._vouches_exposed_to(vouchee_id, loan_id):
            try:
                transitioned = self._complete_link(vouch, loan_id)
                link = self.get_link(vouch.id, loan_id)
                if link is None or link.state != LinkState.COMPLETED:
                    continue

                if transitioned:
                    self._refresh_success_rate(vouch.id)
                    self._refresh_voucher_standing(vouch.voucher_id)
                    outcome.vouchers_updated += 1

                event = self.trust_scores.record_event(
                    vouch.voucher_id, TrustEventType.VOUCH_GIVEN, IMPACTS["vouch_given"],
                    loan_id=loan_id,
                    related_user_id=vouchee_id,
                    description="Someone you vouched for repaid their loan",
                    event_id=idempotency_key("vouch_given", vouch.id, loan_id),
                )
                if event:
                    outcome.trust_events_recorded += 1

                if transitioned and self.outbox.emit(
                    vouch.voucher_id, NotificationType.VOUCHEE_LOAN_COMPLETED,
                    "Someone you vouched for repaid their loan in full",
                    {"loan_id": loan_id, "vouchee_id": vouchee_id}
                ):
                    outcome.vouchers_notified += 1
            except Exception as e:
                logger.error("Voucher %s completion update failed for loan %s",
                             vouch.voucher_id, loan_id, exc_info=True)
                outcome.errors.append(f"{vouch.id}: {e}")
        return outcome

    def _complete_link(self, vouch: Vouch, loan_id: str) -> bool:
        with self.storage.atomic():
            link = self.get_link(vouch.id, loan_id)
            if link is None:
                # Vouch given after the loan was funded: nothing was counted active
                if not self._insert_link(vouch, loan_id, LinkState.COMPLETED):
                    return False
                self.storage.increment(self.vouches_table, vouch.id, {"loans_completed": 1})
                return True
            if not self.storage.compare_and_set(
                self.links_table, link.id, {"state": LinkState.ACTIVE}, {"state": LinkState.COMPLETED}
            ):
                return False
            self.storage.increment(
                self.vouches_table, vouch.id,
                {"loans_active": -1, "loans_completed": 1},
                floor=Decimal("0")
            )
            return True

    def on_vouchee_loan_defaulted(self, vouchee_id: str, loan_id: str) -> VoucheeOutcome:
        """
        Hold vouchers accountable for a defaulted loan.

        Each exposed vouch loses strength according to its success rate, the
        voucher takes a trust penalty, and a voucher with too many vouchees in
        default is locked out of vouching.
        """
        outcome = VoucheeOutcome()
        for vouch in self._vouches_exposed_to(vouchee_id, loan_id):
            try:
                if not self._default_link(vouch, loan_id):
                    continue
                outcome.vouchers_updated += 1

                event = self.trust_scores.record_event(
                    vouch.voucher_id, TrustEventType.VOUCHEE_DEFAULTED, IMPACTS["vouchee_defaulted"],
                    loan_id=loan_id,
                    related_user_id=vouchee_id,
                    description="Someone you vouched for defaulted",
                    event_id=idempotency_key("vouchee_defaulted", vouch.id, loan_id),
                )
                if event:
                    outcome.trust_events_recorded += 1
                self._refresh_voucher_standing(vouch.voucher_id)

                if self.outbox.emit(
                    vouch.voucher_id, NotificationType.VOUCHEE_DEFAULTED,
                    "Someone you vouched for has defaulted on a loan",
                    {"loan_id": loan_id, "vouchee_id": vouchee_id}
                ):
                    outcome.vouchers_notified += 1
                if self._lock_if_needed(vouch.voucher_id):
                    outcome.vouchers_locked += 1
            except Exception as e:
                logger.error("Voucher %s default update failed for loan %s",
                             vouch.voucher_id, loan_id, exc_info=True)
                outcome.errors.append(f"{vouch.id}: {e}")
        return outcome

    def _default_link(self, vouch: Vouch, loan_id: str) -> bool:
        with self.storage.atomic():
            link = self.get_link(vouch.id, loan_id)
            if link is None:
                if not self._insert_link(vouch, loan_id, LinkState.DEFAULTED):
                    return False
                deltas = {"loans_defaulted": 1}
            elif self.storage.compare_and_set(
                self.links_table, link.id, {"state": LinkState.ACTIVE}, {"state": LinkState.DEFAULTED}
            ):
                deltas = {"loans_active": -1, "loans_defaulted": 1}
            else:
                return False

            record = self.storage.increment(self.vouches_table, vouch.id, deltas, floor=Decimal("0"))
            rate = success_rate(record["loans_completed"], record["loans_defaulted"])
            strength = int(round_money(Decimal(record["vouch_strength"]) * success_multiplier(rate), 0))
            self.storage.compare_and_set(self.vouches_table, vouch.id, {}, {
                "success_rate": rate,
                "vouch_strength": max(MIN_STRENGTH, min(MAX_STRENGTH, strength)),
            })
            if self.borrowers.find_profile(vouch.voucher_id):
                self.borrowers.increment(vouch.voucher_id, {"active_vouchee_defaults": 1})
            return True

    def _lock_if_needed(self, voucher_id: str) -> bool:
        profile = self.borrowers.find_profile(voucher_id)
        if not profile or profile.active_vouchee_defaults < self.config.vouch_lock_threshold:
            return False
        if not self.borrowers.update_profile(voucher_id, {"vouching_locked": False}, {"vouching_locked": True}):
            return False
        self.audit_trail.log_event(
            AuditEventType.VOUCHER_LOCKED, "borrower", voucher_id,
            {"active_vouchee_defaults": profile.active_vouchee_defaults}
        )
        self.outbox.emit(voucher_id, NotificationType.VOUCHING_LOCKED,
                         "Your vouching privileges are paused while vouchees are in default")
        return True

    def on_vouchee_default_resolved(self, vouchee_id: str, loan_id: str) -> int:
        """
        Release voucher accountability once a defaulted loan's debt is cleared.

        Returns:
            Number of vouchers unlocked
        """
        unlocked = 0
        for data in self.storage.find(self.links_table, {"loan_id": loan_id}):
            link = VouchLoanLink.from_dict(data)
            if link.state != LinkState.DEFAULTED:
                continue
            with self.storage.atomic():
                if not claim_step(self.storage, "vouchee_default_resolved", link.id):
                    continue
                if self.borrowers.find_profile(link.voucher_id):
                    self.borrowers.increment(link.voucher_id, {"active_vouchee_defaults": -1})
            profile = self.borrowers.find_profile(link.voucher_id)
            if (profile and profile.vouching_locked
                    and profile.active_vouchee_defaults < self.config.vouch_lock_threshold):
                if self.borrowers.update_profile(
                    link.voucher_id, {"vouching_locked": True}, {"vouching_locked": False}
                ):
                    unlocked += 1
                    self.audit_trail.log_event(
                        AuditEventType.VOUCHER_UNLOCKED, "borrower", link.voucher_id, {"loan_id": loan_id}
                    )
                    self.outbox.emit(link.voucher_id, NotificationType.VOUCHING_UNLOCKED,
                                     "Your vouching privileges have been restored")
        return unlocked
