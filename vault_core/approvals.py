"""
Admin Approval Surface

Admins decide pending transactions and pending account applications. Every
decision re-checks that the record is still pending, so a second approval
of the same transaction fails instead of posting twice.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import VaultError
from .lifecycle import ApplicationDecision, OnboardingService
from .logging_config import get_logger, log_action
from .notifications import NotificationService, NotificationTemplates
from .profiles import AccountApplication, ApplicationStatus, ProfileManager
from .transactions import Transaction, TransactionDirection, TransactionPoster


@dataclass
class ApprovalOutcome:
    """Per-item result of a bulk decision"""
    transaction_id: str
    success: bool
    status: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None


class AdminApprovalService:

    def __init__(
        self,
        poster: TransactionPoster,
        onboarding: OnboardingService,
        profiles: ProfileManager,
        audit_trail: AuditTrail,
        notifications: NotificationService
    ):
        self.poster = poster
        self.onboarding = onboarding
        self.profiles = profiles
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.logger = get_logger("vault.approvals")

    # Transactions

    def list_pending_transactions(self) -> List[Transaction]:
        return self.poster.list_pending()

    def approve(self, transaction_id: str, admin_id: str) -> Transaction:
        """
        Apply a pending transaction's effect and mark it completed.

        Raises:
            StateConflictError: If the transaction is no longer pending
            InsufficientFundsError: If the account can not absorb it (it is marked failed)
        """
        transaction = self.poster.complete_pending(transaction_id, actor_id=admin_id, notify=False)
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_APPROVED,
            entity_type="transaction",
            entity_id=transaction_id,
            metadata={"amount": transaction.amount, "direction": transaction.direction.value},
            user_id=admin_id
        )
        self.notifications.notify(
            transaction.user_id,
            NotificationTemplates.transaction_approved(transaction.amount, transaction.description),
            metadata={
                "kind": "deposit" if transaction.direction is TransactionDirection.CREDIT else "withdrawal",
                "amount": str(transaction.amount),
                "transaction_id": transaction_id
            }
        )
        return transaction

    def reject(self, transaction_id: str, admin_id: str, reason: Optional[str] = None) -> Transaction:
        """Mark a pending transaction failed; the balance is untouched"""
        transaction = self.poster.reject_pending(transaction_id, admin_id, reason)
        self.notifications.notify(
            transaction.user_id,
            NotificationTemplates.transaction_rejected(transaction.amount, transaction.description, reason),
            metadata={"transaction_id": transaction_id}
        )
        return transaction

    def bulk_approve(self, transaction_ids: Iterable[str], admin_id: str) -> List[ApprovalOutcome]:
        return self._bulk(transaction_ids, lambda tid: self.approve(tid, admin_id), "bulk_approve", admin_id)

    def bulk_reject(self, transaction_ids: Iterable[str], admin_id: str,
                    reason: Optional[str] = None) -> List[ApprovalOutcome]:
        return self._bulk(transaction_ids, lambda tid: self.reject(tid, admin_id, reason), "bulk_reject", admin_id)

    def _bulk(self, transaction_ids: Iterable[str], decide: Callable[[str], Transaction],
              action: str, admin_id: str) -> List[ApprovalOutcome]:
        """Sequential; one item failing never stops the rest"""
        outcomes = []
        for transaction_id in transaction_ids:
            try:
                transaction = decide(transaction_id)
                outcomes.append(ApprovalOutcome(transaction_id, True, status=transaction.status.value))
            except VaultError as e:
                outcomes.append(ApprovalOutcome(transaction_id, False, error_type=e.error_type, message=e.message))

        succeeded = sum(1 for o in outcomes if o.success)
        log_action(
            self.logger, "info", f"{action}: {succeeded} succeeded, {len(outcomes) - succeeded} failed",
            user_id=admin_id, action=action,
            extra={"succeeded": succeeded, "failed": len(outcomes) - succeeded}
        )
        return outcomes

    # Applications

    def list_pending_applications(self) -> List[AccountApplication]:
        return self.profiles.list_applications(ApplicationStatus.PENDING)

    def approve_application(self, application_id: str, admin_id: str) -> ApplicationDecision:
        return self.onboarding.approve_application(application_id, admin_id)

    def reject_application(self, application_id: str, admin_id: str,
                           reason: Optional[str] = None) -> ApplicationDecision:
        return self.onboarding.reject_application(application_id, admin_id, reason)
