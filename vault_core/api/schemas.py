"""
Pydantic schemas for API requests
"""

from typing import List, Optional
from pydantic import BaseModel, Field

from ..auditor import RepairAction
from ..profiles import AccountType
from ..transactions import TransactionDirection, TransactionSource


# Onboarding schemas
class SignUpRequest(BaseModel):
    email: str
    full_name: str
    account_type: AccountType = AccountType.CHECKING
    pin: Optional[str] = None


class SecretKeyRequest(BaseModel):
    secret_key: str = Field(..., description="Secret key from the welcome email; hyphens and case ignored")


class PinRequest(BaseModel):
    pin: str = Field(..., description="4 to 6 digits")


class AuthenticateRequest(BaseModel):
    pin: Optional[str] = None


# Transaction schemas
class PostTransactionRequest(BaseModel):
    account_id: str
    amount: str = Field(..., description="Decimal amount as string")
    direction: TransactionDirection
    immediate: bool = True
    description: Optional[str] = None
    source: TransactionSource = TransactionSource.INTERNAL
    actor_id: Optional[str] = None


# Admin schemas
class AdminDecisionRequest(BaseModel):
    admin_id: str
    reason: Optional[str] = None


class BulkDecisionRequest(BaseModel):
    admin_id: str
    transaction_ids: List[str]
    reason: Optional[str] = None


class AdminAdjustmentRequest(BaseModel):
    admin_id: str
    amount: str = Field(..., description="Decimal amount as string")
    direction: TransactionDirection
    description: Optional[str] = None


# Joint account schemas
class StartJointRequest(BaseModel):
    account_id: str
    requester_user_id: str


class PartnerDetailsRequest(BaseModel):
    full_name: str
    email: str
    phone: str
    ssn: str
    address: str


class SubmitJointRequest(BaseModel):
    terms_accepted: bool


class OtpRequest(BaseModel):
    code: str


class RecordDepositRequest(BaseModel):
    transaction_id: str


# Repair schemas
class RepairRequest(BaseModel):
    action: RepairAction
    actor_id: str


class BulkRepairRequest(BaseModel):
    user_ids: List[str]
    actor_id: str
    actions: Optional[List[RepairAction]] = None
