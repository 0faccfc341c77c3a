"""
Error Taxonomy

Every failure the core raises derives from VaultError. VaultError subclasses
ValueError so callers written against plain ValueError keep working.
"""

from typing import Optional


class VaultError(ValueError):
    """Base class for all vault core errors"""
    
    error_type = "vault_error"
    
    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class ValidationError(VaultError):
    """Input rejected before any state was touched"""
    error_type = "validation_error"


class InvalidAmountError(ValidationError):
    error_type = "invalid_amount"


class NotFoundError(VaultError):
    error_type = "not_found"


class AccountNotFoundError(NotFoundError):
    error_type = "account_not_found"


class TransactionNotFoundError(NotFoundError):
    error_type = "transaction_not_found"


class ApplicationNotFoundError(NotFoundError):
    error_type = "application_not_found"


class ProfileNotFoundError(NotFoundError):
    error_type = "profile_not_found"


class JointRequestNotFoundError(NotFoundError):
    error_type = "joint_request_not_found"


class StateConflictError(VaultError):
    """The record is not in a state that permits the requested transition"""
    error_type = "state_conflict"


class AccountNotActiveError(StateConflictError):
    error_type = "account_not_active"


class TransactionBlockedError(StateConflictError):
    """The account owner has not cleared the verification gate for transacting"""
    error_type = "transaction_blocked"

    def __init__(self, message: str, reason, entity_id: Optional[str] = None):
        super().__init__(message, entity_id)
        self.reason = reason


class InsufficientFundsError(VaultError):
    error_type = "insufficient_funds"


class ConcurrencyConflictError(VaultError):
    """A conditional write kept losing to concurrent writers"""
    error_type = "concurrency_conflict"
