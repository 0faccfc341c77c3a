"""
Transaction Posting Module

The only code path that changes an account balance. A posting is either
immediate (balance moves and a completed row is written in one atomic unit)
or deferred (a pending row that moves the balance later, when an admin
approves it or the auto-complete sweep reaches it).

Rules enforced on every balance change:

* amounts are strictly positive; a credit adds, a debit subtracts
* asset accounts never end below zero; debit-type accounts may
* a transaction's effect is applied exactly once, when it enters completed
* a transaction leaves pending exactly once (completed or failed)
* a rejected immediate posting leaves no transaction row behind
* the account owner must have cleared the verification gate for
  transacting; only admin adjustments skip that check
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .accounts import AccountManager, AccountStatus
from .audit import AuditTrail, AuditEventType
from .errors import (
    AccountNotActiveError, InsufficientFundsError, InvalidAmountError,
    StateConflictError, TransactionBlockedError, TransactionNotFoundError
)
from .lifecycle import VerificationPolicy, evaluate
from .logging_config import get_logger, log_action
from .notifications import NotificationService, NotificationTemplates
from .profiles import ProfileManager
from .storage import StorageInterface, StorageRecord


CENT = Decimal("0.01")


class TransactionDirection(Enum):
    CREDIT = "credit"
    DEBIT = "debit"

    def signed(self, amount: Decimal) -> Decimal:
        return amount if self is TransactionDirection.CREDIT else -amount


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class TransactionSource(Enum):
    """Where the money came from or went to"""
    INTERNAL = "internal"
    EXTERNAL = "external"    # Outside the bank, e.g. an incoming wire
    ADMIN = "admin"          # Manual admin adjustment

    @property
    def requires_clearance(self) -> bool:
        """Whether the account owner must be cleared to transact"""
        return self is not TransactionSource.ADMIN


@dataclass
class Transaction(StorageRecord):
    user_id: str
    account_id: str
    amount: Decimal
    direction: TransactionDirection
    status: TransactionStatus
    description: str
    source: TransactionSource = TransactionSource.INTERNAL
    auto_complete_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    balance_after: Optional[Decimal] = None
    created_by: Optional[str] = None
    decided_by: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        if self.amount <= 0:
            raise InvalidAmountError("Transaction amount must be positive")

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def signed_amount(self) -> Decimal:
        return self.direction.signed(self.amount)


def to_amount(value: Union[Decimal, str, int, float]) -> Decimal:
    """Parse and round a money amount to cents; it must end up positive"""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be greater than zero, got {value!r}")
    return amount


class TransactionPoster:
    """
    Posts credits and debits against customer accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        profiles: ProfileManager,
        audit_trail: AuditTrail,
        notifications: NotificationService,
        policy: VerificationPolicy = VerificationPolicy(),
        auto_complete_delay_minutes: int = 30
    ):
        self.storage = storage
        self.accounts = accounts
        self.profiles = profiles
        self.policy = policy
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.auto_complete_delay = timedelta(minutes=auto_complete_delay_minutes)
        self.table_name = "transactions"
        self.logger = get_logger("vault.transactions")

    def post(
        self,
        account_id: str,
        amount: Union[Decimal, str, int],
        direction: Union[TransactionDirection, str],
        immediate: bool = True,
        description: Optional[str] = None,
        source: TransactionSource = TransactionSource.INTERNAL,
        actor_id: Optional[str] = None
    ) -> Transaction:
        """
        Post a credit or debit.

        Args:
            account_id: Target account
            amount: Positive amount; rounded to cents
            direction: credit (adds) or debit (subtracts)
            immediate: Apply now, or queue a pending row for later completion
            description: Free text shown to the customer
            source: Origin of the money; only ADMIN skips the owner's gate check
            actor_id: Admin or user who initiated the posting

        Returns:
            The completed (immediate) or pending transaction

        Raises:
            InvalidAmountError: If amount is not a positive number
            AccountNotFoundError: If the account does not exist
            AccountNotActiveError: If the account is closed
            TransactionBlockedError: If the owner may not transact (carries the BlockReason)
            InsufficientFundsError: If an immediate debit would overdraw an asset account
        """
        amount = to_amount(amount)
        direction = TransactionDirection(direction)
        source = TransactionSource(source)
        account = self.accounts.require_account(account_id)
        if not account.is_active:
            raise AccountNotActiveError(f"Account {account_id} is not active", account_id)
        self._check_clearance(account.user_id, source, account_id)

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=account.user_id,
            account_id=account_id,
            amount=amount,
            direction=direction,
            status=TransactionStatus.PENDING,
            description=description or ("Deposit" if direction is TransactionDirection.CREDIT else "Withdrawal"),
            source=source,
            created_by=actor_id
        )

        if immediate:
            with self.storage.atomic():
                updated = self._apply_to_balance(account_id, transaction)
                transaction.status = TransactionStatus.COMPLETED
                transaction.completed_at = now
                transaction.balance_after = Decimal(updated["balance"])
                self.storage.insert(self.table_name, transaction.id, transaction.to_dict())
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSACTION_POSTED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata=self._audit_metadata(transaction),
                    user_id=actor_id
                )
            self._log_posting(transaction, "Transaction posted")
            self._notify_completed(transaction, updated["account_number"])
        else:
            transaction.auto_complete_at = now + self.auto_complete_delay
            with self.storage.atomic():
                self.storage.insert(self.table_name, transaction.id, transaction.to_dict())
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSACTION_QUEUED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={**self._audit_metadata(transaction),
                              "auto_complete_at": transaction.auto_complete_at},
                    user_id=actor_id
                )
            self._log_posting(transaction, "Transaction queued")
            self.notifications.notify(
                transaction.user_id,
                NotificationTemplates.transaction_pending(amount, transaction.description),
                metadata={"transaction_id": transaction.id}
            )

        return transaction

    def complete_pending(self, transaction_id: str, actor_id: Optional[str] = None,
                         notify: bool = True) -> Transaction:
        """
        Apply a pending transaction's balance effect and mark it completed.

        When the account cannot absorb it (insufficient funds, closed account)
        or its owner has since lost the right to transact, the transaction is
        marked failed and the error is re-raised.

        Raises:
            TransactionNotFoundError: If the transaction does not exist
            StateConflictError: If the transaction already left pending
            TransactionBlockedError: If the owner may no longer transact
        """
        transaction = self.require_transaction(transaction_id)
        if not transaction.is_pending:
            raise StateConflictError(
                f"Transaction {transaction_id} is already {transaction.status.value}", transaction_id
            )
        try:
            self._check_clearance(transaction.user_id, transaction.source, transaction_id)
        except TransactionBlockedError as e:
            self._fail(transaction_id, e.message, actor_id)
            raise

        now = datetime.now(timezone.utc)
        try:
            with self.storage.atomic():
                self._claim(transaction_id, {
                    "status": TransactionStatus.COMPLETED.value,
                    "completed_at": now.isoformat(),
                    "decided_by": actor_id
                })
                updated = self._apply_to_balance(transaction.account_id, transaction)
                self.storage.update(self.table_name, transaction_id, {"balance_after": updated["balance"]})
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSACTION_POSTED,
                    entity_type="transaction",
                    entity_id=transaction_id,
                    metadata={**self._audit_metadata(transaction), "status": TransactionStatus.COMPLETED.value},
                    user_id=actor_id
                )
        except (InsufficientFundsError, AccountNotActiveError) as e:
            self._fail(transaction_id, e.message, actor_id)
            raise

        completed = self.require_transaction(transaction_id)
        self._log_posting(completed, "Pending transaction completed")
        if notify:
            self._notify_completed(completed, updated["account_number"])
        return completed

    def reject_pending(self, transaction_id: str, actor_id: str, reason: Optional[str] = None) -> Transaction:
        """
        Move a pending transaction to failed without touching the balance.

        Raises:
            StateConflictError: If the transaction already left pending
        """
        self.require_transaction(transaction_id)
        self._fail(transaction_id, reason or "Rejected by administrator", actor_id, rejected=True)
        return self.require_transaction(transaction_id)

    def complete_due_transactions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Auto-complete sweep: settle every pending transaction whose
        ``auto_complete_at`` has passed.

        Returns:
            Counts of completed, failed and skipped (already decided) rows
        """
        now = now or datetime.now(timezone.utc)
        due = [
            t for t in self.list_pending()
            if t.auto_complete_at is not None and t.auto_complete_at <= now
        ]
        due.sort(key=lambda t: t.auto_complete_at)

        result = {"completed": 0, "failed": 0, "skipped": 0, "total": len(due)}
        for transaction in due:
            try:
                self.complete_pending(transaction.id, actor_id="system")
                result["completed"] += 1
            except (InsufficientFundsError, AccountNotActiveError, TransactionBlockedError):
                result["failed"] += 1
            except StateConflictError:
                result["skipped"] += 1

        log_action(self.logger, "info", "Auto-complete sweep finished",
                   action="complete_due_transactions", extra=result)
        return result

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return self._transaction_from_dict(data) if data else None

    def require_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found", transaction_id)
        return transaction

    def get_account_transactions(self, account_id: str) -> List[Transaction]:
        return self._query({"account_id": account_id})

    def get_user_transactions(self, user_id: str) -> List[Transaction]:
        return self._query({"user_id": user_id})

    def list_pending(self) -> List[Transaction]:
        return self._query({"status": TransactionStatus.PENDING.value})

    def _query(self, filters: Dict[str, Any]) -> List[Transaction]:
        transactions = [self._transaction_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def _check_clearance(self, user_id: str, source: TransactionSource, resource_id: str) -> None:
        """Run the verification gate for the account owner; admin adjustments skip it"""
        if not source.requires_clearance:
            return
        profile = self.profiles.require_profile(user_id)
        decision = evaluate(profile, self.profiles.get_application_for_user(user_id), self.policy)
        if decision.may_transact:
            return
        log_action(
            self.logger, "warning", f"Posting blocked: {decision.reason.name}",
            user_id=user_id, action="post_transaction", resource=resource_id,
            extra={"reason": decision.reason.name, "state": decision.state.value}
        )
        raise TransactionBlockedError(
            f"Transactions are blocked for this account: {decision.message}", decision.reason, resource_id
        )

    def _apply_to_balance(self, account_id: str, transaction: Transaction) -> Dict[str, Any]:
        """Atomic delta-apply; must run inside storage.atomic() so a refusal rolls back"""
        account = self.accounts.require_account(account_id)
        updated = self.storage.increment(
            self.accounts.accounts_table, account_id, "balance",
            transaction.signed_amount, minimum=account.balance_floor,
            mirror=("available_balance",)
        )
        if updated is None:
            raise InsufficientFundsError(
                f"Insufficient funds in account {account.account_number} for "
                f"{transaction.direction.value} of {transaction.amount}", account_id
            )
        if updated["status"] != AccountStatus.ACTIVE.value:
            raise AccountNotActiveError(f"Account {account_id} is not active", account_id)
        return updated

    def _claim(self, transaction_id: str, changes: Dict[str, Any]) -> None:
        """Leave pending exactly once; losing a race raises StateConflictError"""
        if not self.storage.update(self.table_name, transaction_id, changes,
                                   expected={"status": TransactionStatus.PENDING.value}):
            current = self.require_transaction(transaction_id)
            raise StateConflictError(
                f"Transaction {transaction_id} is already {current.status.value}", transaction_id
            )

    def _fail(self, transaction_id: str, reason: str, actor_id: Optional[str], rejected: bool = False) -> None:
        with self.storage.atomic():
            self._claim(transaction_id, {
                "status": TransactionStatus.FAILED.value,
                "failure_reason": reason,
                "decided_by": actor_id
            })
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_REJECTED if rejected else AuditEventType.TRANSACTION_FAILED,
                entity_type="transaction",
                entity_id=transaction_id,
                metadata={"reason": reason},
                user_id=actor_id
            )
        log_action(self.logger, "warning", f"Transaction failed: {reason}",
                   user_id=actor_id, action="fail_transaction", resource=f"transaction:{transaction_id}")

        if not rejected:
            failed = self.require_transaction(transaction_id)
            self.notifications.notify(
                failed.user_id, NotificationTemplates.transaction_failed(failed.amount, failed.description),
                metadata={"transaction_id": transaction_id}
            )

    def _notify_completed(self, transaction: Transaction, account_number: str) -> None:
        if transaction.direction is TransactionDirection.CREDIT:
            content = NotificationTemplates.deposit_received(transaction.amount, account_number)
            kind = "deposit"
        else:
            content = NotificationTemplates.withdrawal_processed(transaction.amount)
            kind = "withdrawal"
        self.notifications.notify(transaction.user_id, content, metadata={
            "kind": kind,
            "amount": str(transaction.amount),
            "transaction_id": transaction.id
        })

    def _log_posting(self, transaction: Transaction, message: str) -> None:
        log_action(
            self.logger, "info", message,
            user_id=transaction.created_by, action="post_transaction",
            resource=f"transaction:{transaction.id}",
            extra=self._audit_metadata(transaction)
        )

    def _audit_metadata(self, transaction: Transaction) -> Dict[str, Any]:
        return {
            "account_id": transaction.account_id,
            "amount": str(transaction.amount),
            "direction": transaction.direction.value,
            "source": transaction.source.value,
            "status": transaction.status.value
        }

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        def parse_time(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            direction=TransactionDirection(data['direction']),
            status=TransactionStatus(data['status']),
            description=data['description'],
            source=TransactionSource(data.get('source', 'internal')),
            auto_complete_at=parse_time('auto_complete_at'),
            completed_at=parse_time('completed_at'),
            failure_reason=data.get('failure_reason'),
            balance_after=Decimal(data['balance_after']) if data.get('balance_after') else None,
            created_by=data.get('created_by'),
            decided_by=data.get('decided_by'),
            version=data.get('version', 1)
        )
