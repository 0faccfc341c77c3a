"""
Notification Module

Best-effort user alerts for lifecycle events: account decisions, deposits,
withdrawals, transaction approvals and joint account stage changes.

Delivery never participates in the business operation that triggered it:
NotificationService swallows and logs sink failures so a broken channel can
not roll back a posted transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import requests
from abc import ABC, abstractmethod

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class NotificationKind(Enum):
    """Visual category of an alert"""
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    PENDING = "pending"


class RecipientType(Enum):
    USER = "user"     # Registered user, addressed by user id
    EMAIL = "email"   # Not (yet) a user, addressed by email address


@dataclass
class Notification(StorageRecord):
    """Individual alert instance"""
    recipient: str
    recipient_type: RecipientType
    title: str
    message: str
    kind: NotificationKind
    is_read: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationContent:
    title: str
    message: str
    kind: NotificationKind


def _money(amount: Decimal) -> str:
    return f"${Decimal(amount):.2f}"


class NotificationTemplates:
    """Pre-defined alert texts for common scenarios"""

    @staticmethod
    def account_application_approved() -> NotificationContent:
        return NotificationContent(
            "Account Application Approved",
            "Congratulations! Your account application has been approved. You can now access all banking features.",
            NotificationKind.SUCCESS
        )

    @staticmethod
    def account_application_rejected() -> NotificationContent:
        return NotificationContent(
            "Account Application Rejected",
            "Unfortunately, your account application was not approved at this time. "
            "Please contact support for more information.",
            NotificationKind.ERROR
        )

    @staticmethod
    def deposit_received(amount: Decimal, account_number: str) -> NotificationContent:
        return NotificationContent(
            "Deposit Received",
            f"{_money(amount)} has been deposited into your account ending in {account_number[-4:]}.",
            NotificationKind.SUCCESS
        )

    @staticmethod
    def withdrawal_processed(amount: Decimal) -> NotificationContent:
        return NotificationContent(
            "Withdrawal Processed",
            f"Your withdrawal of {_money(amount)} has been processed successfully.",
            NotificationKind.SUCCESS
        )

    @staticmethod
    def transaction_pending(amount: Decimal, description: str) -> NotificationContent:
        return NotificationContent(
            "Transaction Pending",
            f"Your transaction of {_money(amount)} for {description} is being processed.",
            NotificationKind.PENDING
        )

    @staticmethod
    def transaction_failed(amount: Decimal, description: str) -> NotificationContent:
        return NotificationContent(
            "Transaction Failed",
            f"Your transaction of {_money(amount)} for {description} could not be completed.",
            NotificationKind.ERROR
        )

    @staticmethod
    def transaction_approved(amount: Decimal, description: str) -> NotificationContent:
        return NotificationContent(
            "Transaction Approved",
            f"Your {description} for {_money(amount)} has been approved and processed.",
            NotificationKind.SUCCESS
        )

    @staticmethod
    def transaction_rejected(amount: Decimal, description: str, reason: Optional[str] = None) -> NotificationContent:
        message = f"Your {description} for {_money(amount)} has been rejected."
        if reason:
            message = f"{message} Reason: {reason}"
        return NotificationContent("Transaction Rejected", message, NotificationKind.INFO)


class NotificationSink(ABC):
    """Delivery channel for alerts"""

    @abstractmethod
    def enqueue(self, notification: Notification) -> None:
        """Hand the alert to the channel. Raise on failure."""
        pass


class LogNotificationSink(NotificationSink):
    """Writes alerts to the application log"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("vault.notifications")

    def enqueue(self, notification: Notification) -> None:
        log_action(
            self.logger, "info", f"{notification.title}: {notification.message}",
            action="notify", resource=f"{notification.recipient_type.value}:{notification.recipient}",
            extra={"kind": notification.kind.value}
        )


class InAppNotificationSink(NotificationSink):
    """Stores alerts for in-app display"""

    def __init__(self, storage: StorageInterface, table_name: str = "alerts"):
        self.storage = storage
        self.table_name = table_name

    def enqueue(self, notification: Notification) -> None:
        self.storage.insert(self.table_name, notification.id, notification.to_dict())


class WebhookNotificationSink(NotificationSink):
    """POSTs alerts to an external delivery service"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def enqueue(self, notification: Notification) -> None:
        response = requests.post(
            self.url,
            json={
                "notification_id": notification.id,
                "recipient": notification.recipient,
                "recipient_type": notification.recipient_type.value,
                "title": notification.title,
                "message": notification.message,
                "type": notification.kind.value,
                "timestamp": notification.created_at.isoformat(),
                "metadata": notification.metadata
            },
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


class NotificationService:
    """
    Fans alerts out to the configured sinks.

    ``notify`` and ``enqueue`` never raise; they return False when any sink
    failed so callers can log or ignore it.
    """

    def __init__(self, storage: StorageInterface, sinks: Optional[List[NotificationSink]] = None):
        self.storage = storage
        self.table_name = "alerts"
        self.sinks = sinks if sinks is not None else [InAppNotificationSink(storage, self.table_name)]
        self.logger = get_logger("vault.notifications")

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def enqueue(
        self,
        recipient: str,
        title: str,
        message: str,
        kind: NotificationKind = NotificationKind.INFO,
        recipient_type: RecipientType = RecipientType.USER,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            recipient=recipient,
            recipient_type=recipient_type,
            title=title,
            message=message,
            kind=kind,
            metadata=metadata or {}
        )

        delivered = True
        for sink in self.sinks:
            try:
                sink.enqueue(notification)
            except Exception as e:
                delivered = False
                log_action(
                    self.logger, "warning", f"Notification delivery failed: {e}",
                    action="notify", resource=f"{recipient_type.value}:{recipient}",
                    extra={"sink": type(sink).__name__, "title": title}
                )
        return delivered

    def notify(self, recipient: str, content: NotificationContent,
               recipient_type: RecipientType = RecipientType.USER,
               metadata: Optional[Dict[str, Any]] = None) -> bool:
        return self.enqueue(recipient, content.title, content.message, content.kind,
                            recipient_type=recipient_type, metadata=metadata)

    def get_alerts(self, recipient: str, unread_only: bool = False) -> List[Notification]:
        """Stored alerts for a recipient, newest first"""
        filters = {"recipient": recipient}
        if unread_only:
            filters["is_read"] = False
        alerts = [self._notification_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        alerts.sort(key=lambda n: n.created_at, reverse=True)
        return alerts

    def mark_as_read(self, notification_id: str) -> bool:
        return self.storage.update(self.table_name, notification_id, {"is_read": True})

    def unread_count(self, recipient: str) -> int:
        return len(self.storage.find(self.table_name, {"recipient": recipient, "is_read": False}))

    def _notification_from_dict(self, data: Dict) -> Notification:
        return Notification(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            recipient=data['recipient'],
            recipient_type=RecipientType(data['recipient_type']),
            title=data['title'],
            message=data['message'],
            kind=NotificationKind(data['kind']),
            is_read=data.get('is_read', False),
            metadata=data.get('metadata') or {}
        )
