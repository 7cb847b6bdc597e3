"""
Notification Intent Module

The engine never formats or delivers messages itself. It records notification
intents (recipient, type, message) in an outbox table; channel providers
deliver pending intents later. Emitting is best-effort: a failure to record an
intent is logged and never fails the lifecycle step that produced it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

import requests

from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("p2p_lending.notifications")


class NotificationType(Enum):
    # Matching
    LOAN_MATCH_OFFER = "loan_match_offer"
    LOAN_ACCEPTED = "loan_accepted"
    NO_MATCH = "no_match"
    # Repayment
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_OVERDUE = "payment_overdue"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DEFAULTED = "loan_defaulted"
    # Vouching
    VOUCH_RECEIVED = "vouch_received"
    VOUCHEE_LOAN_COMPLETED = "vouchee_loan_completed"
    VOUCHEE_DEFAULTED = "vouchee_defaulted"
    VOUCHING_LOCKED = "vouching_locked"
    VOUCHING_UNLOCKED = "vouching_unlocked"


class NotificationStatus(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class NotificationIntent(StorageRecord):
    """A message the platform should deliver to one user"""
    user_id: str
    notification_type: NotificationType
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ChannelProvider(ABC):
    """Abstract base class for notification delivery channels"""

    @abstractmethod
    async def send(self, intent: NotificationIntent) -> bool:
        """Deliver an intent; return True on success"""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes intents to the log (development and tests)"""

    def __init__(self, channel_logger: Optional[logging.Logger] = None):
        self.logger = channel_logger or logger

    async def send(self, intent: NotificationIntent) -> bool:
        self.logger.info(
            "Notification %s to %s: %s",
            intent.notification_type.value, intent.user_id, intent.message
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """POSTs intents to an external delivery service"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def send(self, intent: NotificationIntent) -> bool:
        payload = {
            "notification_id": intent.id,
            "type": intent.notification_type.value,
            "user_id": intent.user_id,
            "message": intent.message,
            "metadata": intent.metadata,
            "timestamp": intent.created_at.isoformat(),
        }
        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning("Webhook delivery of %s failed: %s", intent.id, e)
            return False
        return 200 <= response.status_code < 300


class InAppChannelProvider(ChannelProvider):
    """Stores intents for display in the user's in-app inbox"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "in_app_notifications"

    async def send(self, intent: NotificationIntent) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, intent.id, {
            "id": intent.id,
            "created_at": now,
            "updated_at": now,
            "user_id": intent.user_id,
            "type": intent.notification_type.value,
            "message": intent.message,
            "metadata": intent.metadata,
            "is_read": False,
        })
        return True


class NotificationOutbox:
    """
    Durable outbox of notification intents
    """

    def __init__(self, storage: StorageInterface, providers: Optional[List[ChannelProvider]] = None):
        self.storage = storage
        self.table = "notification_intents"
        self.providers = providers if providers is not None else [InAppChannelProvider(storage)]

    def emit(
        self,
        user_id: Optional[str],
        notification_type: NotificationType,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[NotificationIntent]:
        """
        Record a notification intent.

        Returns:
            The stored intent, or None if there was no recipient or the
            outbox write failed
        """
        if not user_id:
            return None
        now = datetime.now(timezone.utc)
        intent = NotificationIntent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            notification_type=notification_type,
            message=message,
            metadata=metadata or {},
        )
        try:
            self.storage.insert_unique(self.table, intent.id, intent.to_dict())
        except Exception:
            logger.error("Could not record %s notification for %s",
                         notification_type.value, user_id, exc_info=True)
            return None
        return intent

    def get_for_user(self, user_id: str) -> List[NotificationIntent]:
        intents = [
            NotificationIntent.from_dict(data)
            for data in self.storage.find(self.table, {"user_id": user_id})
        ]
        return sorted(intents, key=lambda i: i.created_at)

    def pending(self) -> List[NotificationIntent]:
        intents = [
            NotificationIntent.from_dict(data)
            for data in self.storage.find(self.table, {"status": NotificationStatus.PENDING.value})
        ]
        return sorted(intents, key=lambda i: i.created_at)

    async def deliver_pending(self, max_attempts: int = 3) -> Dict[str, int]:
        """
        Deliver pending intents through every provider.

        An intent is delivered when all providers succeed; after max_attempts
        failed rounds it is marked failed.

        Returns:
            Counters: processed, delivered, failed, retrying
        """
        stats = {"processed": 0, "delivered": 0, "failed": 0, "retrying": 0}
        for intent in self.pending():
            stats["processed"] += 1
            error = None
            delivered = True
            for provider in self.providers:
                try:
                    if not await provider.send(intent):
                        delivered = False
                except Exception as e:
                    logger.error("Provider %s raised for %s", type(provider).__name__, intent.id, exc_info=True)
                    error = str(e)
                    delivered = False

            attempts = intent.attempts + 1
            if delivered:
                updates = {"status": NotificationStatus.DELIVERED, "attempts": attempts,
                           "delivered_at": datetime.now(timezone.utc)}
                stats["delivered"] += 1
            elif attempts >= max_attempts:
                updates = {"status": NotificationStatus.FAILED, "attempts": attempts, "last_error": error}
                stats["failed"] += 1
            else:
                updates = {"attempts": attempts, "last_error": error}
                stats["retrying"] += 1
            self.storage.compare_and_set(
                self.table, intent.id, {"status": NotificationStatus.PENDING}, updates
            )
        return stats
