"""
Trust Score Module

Computes a user's 0-100 reputation from an append-only event log plus
profile data. The score is a weighted blend of five components:

    payment history   40%
    loan completion   25%
    social (vouches)  15%
    verification      10%
    tenure            10%

Every event's impact pushes its component in one direction only, so adding
on-time/early payments or completions never lowers the score and adding
missed/late/failed payments never raises it.

Events that must be recorded once carry a deterministic id derived from
their natural key; the store's uniqueness check is what de-duplicates them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .borrowers import BorrowerRepository
from .storage import DuplicateRecordError, StorageInterface, StorageRecord, idempotency_key


logger = logging.getLogger("p2p_lending.trust_score")


class TrustEventType(Enum):
    PAYMENT_ONTIME = "payment_ontime"
    PAYMENT_EARLY = "payment_early"
    PAYMENT_LATE = "payment_late"
    PAYMENT_MISSED = "payment_missed"
    PAYMENT_FAILED = "payment_failed"
    LOAN_COMPLETED = "loan_completed"
    FIRST_LOAN_COMPLETED = "first_loan_completed"
    LOAN_DEFAULTED = "loan_defaulted"
    VOUCH_RECEIVED = "vouch_received"
    VOUCH_REVOKED = "vouch_revoked"
    VOUCH_GIVEN = "vouch_given"  # Voucher rewarded for a vouchee's completed loan
    VOUCHEE_DEFAULTED = "vouchee_defaulted"


PAYMENT_TIMING_EVENTS = {
    TrustEventType.PAYMENT_ONTIME,
    TrustEventType.PAYMENT_EARLY,
    TrustEventType.PAYMENT_LATE,
}
PAYMENT_EVENTS = PAYMENT_TIMING_EVENTS | {TrustEventType.PAYMENT_MISSED, TrustEventType.PAYMENT_FAILED}
COMPLETION_EVENTS = {
    TrustEventType.LOAN_COMPLETED,
    TrustEventType.FIRST_LOAN_COMPLETED,
    TrustEventType.LOAN_DEFAULTED,
}
VOUCH_EVENTS = {TrustEventType.VOUCH_RECEIVED, TrustEventType.VOUCH_REVOKED}
VOUCHER_EVENTS = {TrustEventType.VOUCH_GIVEN, TrustEventType.VOUCHEE_DEFAULTED}
ON_TIME_EVENTS = {TrustEventType.PAYMENT_ONTIME, TrustEventType.PAYMENT_EARLY}

IMPACTS = {
    "payment_ontime": 2,
    "payment_early": 4,
    "payment_late_1_7": -3,
    "payment_late_8_14": -5,
    "payment_late_15_30": -8,
    "payment_missed": -15,
    "loan_completed": 10,
    "first_loan_completed": 15,
    "loan_defaulted": -30,
    "vouch_received": 3,
    "vouch_received_strong": 8,
    "vouch_given": 2,
    "vouchee_defaulted": -10,
}

# Longest run of consecutive on-time/early payments -> bonus
STREAK_BONUSES = [(100, 50), (50, 35), (25, 20), (10, 10), (5, 5)]

WEIGHTS = {
    "payment": Decimal("0.40"),
    "completion": Decimal("0.25"),
    "social": Decimal("0.15"),
    "verification": Decimal("0.10"),
    "tenure": Decimal("0.10"),
}

VERIFICATION_POINTS = {
    "kyc_verified": 40,
    "selfie_verified": 20,
    "phone_verified": 15,
    "bank_connected": 25,
}

# (months on platform below, tenure component)
TENURE_STEPS = [(1, 10), (3, 25), (6, 40), (12, 60), (24, 80)]

BASELINE = 50
SOCIAL_VOUCH_CAP = 50

GRADES = [
    (90, "A+", "Exceptional"),
    (80, "A", "Excellent"),
    (70, "B", "Good"),
    (60, "C", "Building Trust"),
    (50, "D", "Needs Improvement"),
    (0, "F", "Poor"),
]


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def late_payment_impact(days_late: int) -> int:
    """Penalty for a payment made or still outstanding days_late after due"""
    if days_late > 30:
        return IMPACTS["payment_missed"]
    if days_late > 14:
        return IMPACTS["payment_late_15_30"]
    if days_late > 7:
        return IMPACTS["payment_late_8_14"]
    return IMPACTS["payment_late_1_7"]


def grade_for(score: int) -> Dict[str, str]:
    for threshold, grade, label in GRADES:
        if score >= threshold:
            return {"grade": grade, "label": label}
    return {"grade": "F", "label": "Poor"}


@dataclass
class TrustScoreEvent(StorageRecord):
    """Append-only reputation event"""
    user_id: str
    event_type: TrustEventType
    score_impact: int
    occurred_at: datetime
    loan_id: Optional[str] = None
    payment_id: Optional[str] = None
    related_user_id: Optional[str] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrustScoreBreakdown:
    user_id: str
    score: int
    grade: str
    label: str
    components: Dict[str, int]
    event_count: int
    longest_streak: int
    calculated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "score": self.score,
            "grade": self.grade,
            "label": self.label,
            "components": dict(self.components),
            "event_count": self.event_count,
            "longest_streak": self.longest_streak,
            "calculated_at": self.calculated_at.isoformat(),
        }


class TrustScoreService:
    """
    Records trust events and maintains each user's cached score
    """

    def __init__(
        self,
        storage: StorageInterface,
        borrowers: BorrowerRepository,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.borrowers = borrowers
        self.audit_trail = audit_trail
        self.events_table = "trust_score_events"
        self.scores_table = "trust_scores"

    # Idempotency keys

    @staticmethod
    def payment_event_id(user_id: str, loan_id: str, payment_id: str) -> str:
        """One timing event per payment, whichever classification it got"""
        return idempotency_key("payment_timing", user_id, loan_id, payment_id)

    @staticmethod
    def completion_event_id(user_id: str, loan_id: str) -> str:
        return idempotency_key("loan_completion", user_id, loan_id)

    @staticmethod
    def default_event_id(user_id: str, loan_id: str) -> str:
        return idempotency_key("loan_default", user_id, loan_id)

    @staticmethod
    def failed_payment_event_id(user_id: str, loan_id: str, payment_id: str) -> str:
        return idempotency_key("payment_failed", user_id, loan_id, payment_id)

    @staticmethod
    def missed_payment_event_id(user_id: str, loan_id: str, entry_id: str, impact: int) -> str:
        """One penalty per overdue installment per severity level"""
        return idempotency_key("payment_overdue", user_id, loan_id, entry_id, impact)

    # Recording

    def record_event(
        self,
        user_id: str,
        event_type: TrustEventType,
        score_impact: int,
        loan_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        related_user_id: Optional[str] = None,
        description: str = "",
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None
    ) -> Optional[TrustScoreEvent]:
        """
        Append an event and refresh the user's cached score.

        Args:
            user_id: User the event concerns
            event_type: Event type
            score_impact: Signed impact on the event's component
            loan_id: Related loan
            payment_id: Related payment
            related_user_id: Other party (voucher/vouchee)
            description: Human-readable description
            occurred_at: When the underlying fact happened
            metadata: Extra structured data
            event_id: Deterministic id for events that must be recorded once

        Returns:
            The new event, or None if an event with event_id already exists
        """
        now = datetime.now(timezone.utc)
        if event_id and self.storage.exists(self.events_table, event_id):
            return None

        event = TrustScoreEvent(
            id=event_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            event_type=event_type,
            score_impact=score_impact,
            occurred_at=occurred_at or now,
            loan_id=loan_id,
            payment_id=payment_id,
            related_user_id=related_user_id,
            description=description,
            metadata=metadata or {},
        )
        try:
            self.storage.insert_unique(self.events_table, event.id, event.to_dict())
        except DuplicateRecordError:
            logger.debug("Trust event %s already recorded", event.id)
            return None

        score = self.recalculate(user_id)
        logger.info(
            "Trust event %s (%+d) for %s, score now %d",
            event_type.value, score_impact, user_id, score
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                AuditEventType.TRUST_EVENT_RECORDED, "trust_score", user_id,
                {"event_type": event_type.value, "score_impact": score_impact,
                 "loan_id": loan_id, "score": score}
            )
        return event

    def record_payment_timing(
        self,
        user_id: str,
        loan_id: str,
        payment_id: str,
        timing: str,
        days_from_due: int,
        paid_at: datetime
    ) -> Optional[TrustScoreEvent]:
        """Record the early/on-time/late event for a payment, once per payment"""
        if timing == "early":
            event_type, impact = TrustEventType.PAYMENT_EARLY, IMPACTS["payment_early"]
            description = f"Payment made {-days_from_due} days early"
        elif timing == "on_time":
            event_type, impact = TrustEventType.PAYMENT_ONTIME, IMPACTS["payment_ontime"]
            description = "Payment made on time"
        else:
            event_type, impact = TrustEventType.PAYMENT_LATE, late_payment_impact(days_from_due)
            description = f"Payment made {days_from_due} days late"

        return self.record_event(
            user_id,
            event_type,
            impact,
            loan_id=loan_id,
            payment_id=payment_id,
            description=description,
            occurred_at=paid_at,
            metadata={"days_from_due": days_from_due},
            event_id=self.payment_event_id(user_id, loan_id, payment_id),
        )

    def record_loan_completion(
        self,
        user_id: str,
        loan_id: str,
        completed_at: Optional[datetime] = None
    ) -> Optional[TrustScoreEvent]:
        """Record loan completion; the first completed loan earns the larger bonus"""
        prior = [
            e for e in self.get_events(user_id)
            if e.event_type in (TrustEventType.LOAN_COMPLETED, TrustEventType.FIRST_LOAN_COMPLETED)
            and e.loan_id != loan_id
        ]
        if prior:
            event_type, impact = TrustEventType.LOAN_COMPLETED, IMPACTS["loan_completed"]
        else:
            event_type, impact = TrustEventType.FIRST_LOAN_COMPLETED, IMPACTS["first_loan_completed"]
        return self.record_event(
            user_id,
            event_type,
            impact,
            loan_id=loan_id,
            description="Loan repaid in full",
            occurred_at=completed_at,
            event_id=self.completion_event_id(user_id, loan_id),
        )

    # Queries

    def get_event(self, event_id: str) -> Optional[TrustScoreEvent]:
        data = self.storage.load(self.events_table, event_id)
        return TrustScoreEvent.from_dict(data) if data else None

    def find_payment_timing_event(self, user_id: str, loan_id: str, payment_id: str) -> Optional[TrustScoreEvent]:
        return self.get_event(self.payment_event_id(user_id, loan_id, payment_id))

    def find_completion_event(self, user_id: str, loan_id: str) -> Optional[TrustScoreEvent]:
        return self.get_event(self.completion_event_id(user_id, loan_id))

    def get_events(self, user_id: str) -> List[TrustScoreEvent]:
        """All events for a user in the order they happened"""
        events = [
            TrustScoreEvent.from_dict(data)
            for data in self.storage.find(self.events_table, {"user_id": user_id})
        ]
        return sorted(events, key=lambda e: (e.occurred_at, e.created_at, e.id))

    def get_score(self, user_id: str) -> int:
        """Cached score, computed on first access"""
        cached = self.storage.load(self.scores_table, user_id)
        if cached:
            return cached["score"]
        return self.recalculate(user_id)

    def recalculate(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Rebuild the score from the full event log and cache it"""
        breakdown = self.get_breakdown(user_id, now)
        record = breakdown.to_dict()
        record.update({
            "id": user_id,
            "created_at": breakdown.calculated_at.isoformat(),
            "updated_at": breakdown.calculated_at.isoformat(),
        })
        self.storage.save(self.scores_table, user_id, record)
        return breakdown.score

    def get_breakdown(self, user_id: str, now: Optional[datetime] = None) -> TrustScoreBreakdown:
        now = now or datetime.now(timezone.utc)
        events = self.get_events(user_id)
        profile = self.borrowers.find_profile(user_id)

        payment_events = [e for e in events if e.event_type in PAYMENT_EVENTS]
        streak = self._longest_streak(payment_events)
        payment = clamp(
            BASELINE + sum(e.score_impact for e in payment_events) + self._streak_bonus(streak)
        )

        completion = clamp(
            BASELINE + sum(e.score_impact for e in events if e.event_type in COMPLETION_EVENTS)
        )

        vouch_total = sum(e.score_impact for e in events if e.event_type in VOUCH_EVENTS)
        voucher_total = sum(e.score_impact for e in events if e.event_type in VOUCHER_EVENTS)
        social = clamp(BASELINE + min(vouch_total, SOCIAL_VOUCH_CAP) + voucher_total)

        verification = 0
        tenure = 0
        if profile:
            verification = clamp(sum(
                points for flag, points in VERIFICATION_POINTS.items() if getattr(profile, flag)
            ))
            tenure = self._tenure_component(profile.created_at, now)

        components = {
            "payment": payment,
            "completion": completion,
            "social": social,
            "verification": verification,
            "tenure": tenure,
        }
        weighted = sum(WEIGHTS[name] * value for name, value in components.items())
        score = clamp(int(weighted.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))
        grade = grade_for(score)

        return TrustScoreBreakdown(
            user_id=user_id,
            score=score,
            grade=grade["grade"],
            label=grade["label"],
            components=components,
            event_count=len(events),
            longest_streak=streak,
            calculated_at=now,
        )

    @staticmethod
    def _longest_streak(payment_events: List[TrustScoreEvent]) -> int:
        longest = current = 0
        for event in payment_events:
            if event.event_type in ON_TIME_EVENTS:
                current += 1
                longest = max(longest, current)
            else:
                current = 0
        return longest

    @staticmethod
    def _streak_bonus(streak: int) -> int:
        for length, bonus in STREAK_BONUSES:
            if streak >= length:
                return bonus
        return 0

    @staticmethod
    def _tenure_component(created_at: datetime, now: datetime) -> int:
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        months = (now - created_at).days / 30
        for limit, value in TENURE_STEPS:
            if months < limit:
                return value
        return 100
