"""
Account Management Module

Customer accounts and their balances. Asset accounts (checking, savings)
hold customer money and may never go below zero; debit-type accounts
(credit card, loan) track what the customer owes and may go negative.

Balances are only ever changed through the transaction poster, which uses
the storage layer's atomic increment. This module never writes ``balance``.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import AccountNotFoundError, StateConflictError, ValidationError
from .logging_config import get_logger, log_action
from .profiles import AccountType
from .storage import StorageInterface, StorageRecord, compare_and_set


class AccountStatus(Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Account(StorageRecord):
    user_id: str
    account_type: AccountType
    account_number: str
    status: AccountStatus = AccountStatus.ACTIVE
    balance: Decimal = Decimal("0.00")
    available_balance: Decimal = Decimal("0.00")
    joint_partner_email: Optional[str] = None
    joint_transfer_restricted: bool = False
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_asset_account(self) -> bool:
        return self.account_type.is_asset

    @property
    def is_joint(self) -> bool:
        return self.joint_partner_email is not None

    @property
    def balance_floor(self) -> Optional[Decimal]:
        """Lowest balance a posting may leave behind (None = unbounded)"""
        return Decimal("0") if self.is_asset_account else None

    def blocks_transfer_to(self, recipient_email: str, owner_email: str) -> bool:
        """
        Joint accounts may not move money to either of their two holders. The
        transfer-initiation boundary checks this before creating a transfer.
        """
        if not (self.is_joint and self.joint_transfer_restricted):
            return False
        holders = {self.joint_partner_email.lower(), owner_email.lower()}
        return recipient_email.lower() in holders


class AccountManager:
    """Opens, reads and closes accounts"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, max_retries: int = 5):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_retries = max_retries
        self.accounts_table = "accounts"
        self.logger = get_logger("vault.accounts")

    def open_account(self, user_id: str, account_type: AccountType,
                     actor_id: Optional[str] = None) -> Account:
        """Open a zero-balance active account"""
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_type=account_type,
            account_number=self._generate_account_number()
        )
        self.storage.insert(self.accounts_table, account.id, account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "account_number": account.account_number,
                "account_type": account_type.value,
                "owner": user_id
            },
            user_id=actor_id or user_id
        )
        log_action(
            self.logger, "info", f"Account opened: {account_type.value}",
            user_id=actor_id or user_id, action="open_account", resource=f"account:{account.id}"
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        return self._account_from_dict(data) if data else None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id)
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        found = self.storage.find(self.accounts_table, {"account_number": account_number})
        return self._account_from_dict(found[0]) if found else None

    def get_user_accounts(self, user_id: str) -> List[Account]:
        accounts = [self._account_from_dict(d) for d in self.storage.find(self.accounts_table, {"user_id": user_id})]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def has_active_account(self, user_id: str) -> bool:
        return any(account.is_active for account in self.get_user_accounts(user_id))

    def list_accounts(self) -> List[Account]:
        return [self._account_from_dict(d) for d in self.storage.load_all(self.accounts_table)]

    def close_account(self, account_id: str, actor_id: str, reason: str) -> Account:
        def compute(current):
            if current["status"] == AccountStatus.CLOSED.value:
                raise StateConflictError(f"Account {account_id} is already closed", account_id)
            if Decimal(current["balance"]) != 0:
                raise StateConflictError(f"Account {account_id} has a non-zero balance", account_id)
            return {"status": AccountStatus.CLOSED.value}

        data = compare_and_set(self.storage, self.accounts_table, account_id, compute,
                               self.max_retries, AccountNotFoundError)
        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CLOSED,
            entity_type="account",
            entity_id=account_id,
            metadata={"reason": reason},
            user_id=actor_id
        )
        return self._account_from_dict(data)

    def link_joint_partner(self, account_id: str, partner_email: str) -> Account:
        """Record the joint holder and switch on the holder-to-holder transfer restriction"""
        if not partner_email or "@" not in partner_email:
            raise ValidationError("Partner email is required")

        def compute(current):
            if current["status"] != AccountStatus.ACTIVE.value:
                raise StateConflictError(f"Account {account_id} is not active", account_id)
            return {"joint_partner_email": partner_email.lower(), "joint_transfer_restricted": True}

        data = compare_and_set(self.storage, self.accounts_table, account_id, compute,
                               self.max_retries, AccountNotFoundError)
        return self._account_from_dict(data)

    def _generate_account_number(self) -> str:
        """Random 9-digit number, unique among stored accounts"""
        while True:
            number = str(100000000 + secrets.randbelow(900000000))
            if not self.storage.find(self.accounts_table, {"account_number": number}):
                return number

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_type=AccountType(data['account_type']),
            account_number=data['account_number'],
            status=AccountStatus(data['status']),
            balance=Decimal(data.get('balance', '0')),
            available_balance=Decimal(data.get('available_balance', data.get('balance', '0'))),
            joint_partner_email=data.get('joint_partner_email'),
            joint_transfer_restricted=data.get('joint_transfer_restricted', False),
            version=data.get('version', 1)
        )
