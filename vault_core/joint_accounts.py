"""
Joint Account Activation

A primary holder invites a partner onto one of their asset accounts. The
request moves through stages:

    form -> review -> pending -> activated
                         \\-> rejected

The deposit the partner must make is frozen when the request is submitted
(balance at that moment times the configured percentage) and never
recomputed. The account becomes joint only once BOTH an admin has approved
the request AND a qualifying external deposit has been recorded, in either
order.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .documents import DocumentStore, UploadedFile
from .errors import (
    JointRequestNotFoundError, StateConflictError, ValidationError
)
from .logging_config import get_logger, log_action
from .messaging import OtpManager
from .notifications import NotificationKind, NotificationService, RecipientType
from .profiles import ProfileManager
from .storage import StorageInterface, StorageRecord, compare_and_set
from .transactions import TransactionDirection, TransactionPoster, TransactionSource, TransactionStatus


CENT = Decimal("0.01")
OTP_ACTION = "joint_account"


class JointStage(Enum):
    FORM = "form"
    REVIEW = "review"
    PENDING = "pending"
    ACTIVATED = "activated"
    REJECTED = "rejected"

    @property
    def is_open(self) -> bool:
        return self in (JointStage.FORM, JointStage.REVIEW, JointStage.PENDING)


class JointStatus(Enum):
    """Admin decision, independent of the deposit"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class PartnerDetails:
    full_name: str
    email: str
    phone: str
    ssn: str
    address: str

    def validate(self) -> None:
        missing = [name for name in ("full_name", "email", "phone", "ssn", "address")
                   if not str(getattr(self, name) or "").strip()]
        if missing:
            raise ValidationError(f"Missing partner details: {', '.join(missing)}")
        if "@" not in self.email:
            raise ValidationError(f"Invalid partner email: {self.email!r}")
        if len(re.sub(r"\D", "", self.ssn)) != 9:
            raise ValidationError("Partner SSN must have 9 digits")

    @property
    def ssn_last4(self) -> str:
        return re.sub(r"\D", "", self.ssn)[-4:]


@dataclass
class JointAccountRequest(StorageRecord):
    account_id: str
    requester_user_id: str
    stage: JointStage
    status: JointStatus
    required_deposit_percentage: Decimal
    partner_full_name: Optional[str] = None
    partner_email: Optional[str] = None
    partner_phone: Optional[str] = None
    partner_ssn_last4: Optional[str] = None
    partner_address: Optional[str] = None
    partner_id_document_url: Optional[str] = None
    partner_drivers_license_url: Optional[str] = None
    terms_accepted: bool = False
    deposit_amount: Optional[Decimal] = None
    submitted_at: Optional[datetime] = None
    otp_verified: bool = False
    deposit_transaction_id: Optional[str] = None
    deposit_received_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    activated_at: Optional[datetime] = None
    version: int = 1

    @property
    def deposit_recorded(self) -> bool:
        return self.deposit_transaction_id is not None

    @property
    def ready_to_activate(self) -> bool:
        return (self.stage == JointStage.PENDING and self.status == JointStatus.APPROVED
                and self.deposit_recorded)


# (primary holder message, partner message, kind) per stage event
def _stage_messages(event: str, partner: str, primary: str, deposit: str, account_number: str):
    return {
        "documents_uploaded": (
            f"{partner} has uploaded the required documents. Review the details and submit your request.",
            "Documents uploaded successfully! Your joint account application will be reviewed by our team.",
            NotificationKind.INFO
        ),
        "request_submitted": (
            f"Joint account request submitted for {partner}. Waiting for the {deposit} security deposit and admin review.",
            f"{primary} has invited you to join their joint account. Please complete the {deposit} security deposit.",
            NotificationKind.INFO
        ),
        "otp_verified": (
            f"Your joint account request with {partner} has been verified. It is now under admin review.",
            "Identity verification successful! Your joint account application is under review.",
            NotificationKind.SUCCESS
        ),
        "deposit_received": (
            f"Partner {partner} has completed the security deposit of {deposit}.",
            f"Your deposit of {deposit} has been received.",
            NotificationKind.SUCCESS
        ),
        "approved": (
            f"Your joint account request with {partner} has been approved. "
            "The account activates once the security deposit is confirmed.",
            "Your joint account application has been approved. Access starts once your security deposit is confirmed.",
            NotificationKind.SUCCESS
        ),
        "rejected": (
            f"Your joint account request with {partner} has been declined. Please contact support for more information.",
            "Unfortunately, your joint account application has been declined. Please contact support for details.",
            NotificationKind.ERROR
        ),
        "activated": (
            f"Your joint account with {partner} is now fully activated! Both holders now have access.",
            f"Your joint account is now active! You have full access to account {account_number}.",
            NotificationKind.SUCCESS
        ),
    }[event]


class JointAccountActivator:
    """Runs joint account requests from invitation to activation"""

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        poster: TransactionPoster,
        profiles: ProfileManager,
        audit_trail: AuditTrail,
        notifications: NotificationService,
        otp: OtpManager,
        documents: DocumentStore,
        deposit_percentage: Decimal = Decimal("0.01"),
        max_retries: int = 5
    ):
        self.storage = storage
        self.accounts = accounts
        self.poster = poster
        self.profiles = profiles
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.otp = otp
        self.documents = documents
        self.deposit_percentage = Decimal(deposit_percentage)
        self.max_retries = max_retries
        self.table_name = "joint_account_requests"
        self.logger = get_logger("vault.joint_accounts")

    def start_request(self, account_id: str, requester_user_id: str) -> JointAccountRequest:
        account = self.accounts.require_account(account_id)
        if account.user_id != requester_user_id:
            raise ValidationError(f"Account {account_id} does not belong to the requester", account_id)
        if not account.is_active or not account.is_asset_account:
            raise StateConflictError("Joint holders can only be added to active checking or savings accounts", account_id)
        if account.is_joint:
            raise StateConflictError(f"Account {account_id} already has a joint holder", account_id)
        if any(r.stage.is_open for r in self.requests_for_account(account_id)):
            raise StateConflictError(f"Account {account_id} already has an open joint account request", account_id)

        now = datetime.now(timezone.utc)
        request = JointAccountRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            requester_user_id=requester_user_id,
            stage=JointStage.FORM,
            status=JointStatus.PENDING,
            required_deposit_percentage=self.deposit_percentage
        )
        self.storage.insert(self.table_name, request.id, request.to_dict())
        self._audit(request.id, requester_user_id, {"stage": JointStage.FORM.value, "account_id": account_id})
        return request

    def submit_partner_details(self, request_id: str, partner: PartnerDetails,
                               id_document: Optional[UploadedFile] = None,
                               drivers_license: Optional[UploadedFile] = None) -> JointAccountRequest:
        """Capture (or correct) partner details and move the request to review"""
        partner.validate()
        request = self.require_request(request_id)
        requester = self.profiles.get_profile(request.requester_user_id)
        if requester and requester.email == partner.email.strip().lower():
            raise ValidationError("The partner must be a different person from the account holder")

        urls = {}
        if id_document:
            urls["partner_id_document_url"] = self.documents.upload_document(id_document[1], id_document[0], request_id)
        if drivers_license:
            urls["partner_drivers_license_url"] = self.documents.upload_document(
                drivers_license[1], drivers_license[0], request_id
            )

        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            if current["stage"] not in (JointStage.FORM.value, JointStage.REVIEW.value):
                raise StateConflictError(f"Partner details can no longer be changed ({current['stage']})", request_id)
            return {
                "partner_full_name": partner.full_name.strip(),
                "partner_email": partner.email.strip().lower(),
                "partner_phone": partner.phone.strip(),
                "partner_ssn_last4": partner.ssn_last4,
                "partner_address": partner.address.strip(),
                "stage": JointStage.REVIEW.value,
                **urls
            }

        request = self._transition(request_id, compute, request.requester_user_id)
        if urls:
            self._notify_stage(request, "documents_uploaded")
        return request

    def deposit_preview(self, request_id: str) -> Decimal:
        """Deposit the partner would owe if the request were submitted now"""
        request = self.require_request(request_id)
        if request.deposit_amount is not None:
            return request.deposit_amount
        return self._deposit_for(request)

    def submit(self, request_id: str, terms_accepted: bool) -> JointAccountRequest:
        """
        Accept the terms, freeze the deposit amount and send the OTP.

        The frozen amount is the account balance at this moment times the
        request's deposit percentage, rounded to cents.
        """
        if not terms_accepted:
            raise ValidationError("Please accept the joint account terms and conditions")
        request = self.require_request(request_id)
        deposit_amount = self._deposit_for(request)
        submitted_at = datetime.now(timezone.utc)

        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            if current["stage"] != JointStage.REVIEW.value:
                raise StateConflictError(f"Request {request_id} is not ready to submit ({current['stage']})", request_id)
            return {
                "terms_accepted": True,
                "deposit_amount": str(deposit_amount),
                "submitted_at": submitted_at.isoformat(),
                "stage": JointStage.PENDING.value
            }

        request = self._transition(request_id, compute, request.requester_user_id)

        requester = self.profiles.get_profile(request.requester_user_id)
        if requester:
            self.otp.issue(request_id, requester.email, OTP_ACTION)
        self._notify_stage(request, "request_submitted")
        return request

    def verify_otp(self, request_id: str, code: str) -> JointAccountRequest:
        request = self.require_request(request_id)
        if request.stage != JointStage.PENDING:
            raise StateConflictError(f"Request {request_id} is not awaiting verification", request_id)
        if request.otp_verified:
            return request
        if not self.otp.verify(request_id, code, OTP_ACTION):
            raise ValidationError("Invalid or expired verification code", request_id)

        request = self._transition(request_id, lambda current: {"otp_verified": True}, request.requester_user_id)
        self._notify_stage(request, "otp_verified")
        return request

    def record_deposit(self, request_id: str, transaction_id: str) -> JointAccountRequest:
        """
        Link the partner's security deposit.

        The transaction must be a completed external credit into the request's
        account of at least the frozen deposit amount, made after the request
        was submitted.
        """
        request = self.require_request(request_id)
        if request.deposit_transaction_id == transaction_id:
            return request
        transaction = self.poster.require_transaction(transaction_id)

        if transaction.account_id != request.account_id:
            raise ValidationError("Deposit was made into a different account", transaction_id)
        if transaction.status != TransactionStatus.COMPLETED:
            raise StateConflictError(f"Deposit transaction is {transaction.status.value}, not completed", transaction_id)
        if transaction.direction != TransactionDirection.CREDIT or transaction.source != TransactionSource.EXTERNAL:
            raise ValidationError("Deposit must be an external credit", transaction_id)
        if request.submitted_at is None or transaction.created_at < request.submitted_at:
            raise ValidationError("Deposit was made before the joint account request was submitted", transaction_id)
        if request.deposit_amount is None or transaction.amount < request.deposit_amount:
            raise ValidationError(
                f"Deposit of {transaction.amount} is below the required {request.deposit_amount}", transaction_id
            )
        claimed = self.storage.find(self.table_name, {"deposit_transaction_id": transaction_id})
        if claimed:
            raise StateConflictError("Deposit transaction is already linked to another request", transaction_id)

        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            if current["stage"] != JointStage.PENDING.value:
                raise StateConflictError(f"Request {request_id} is not awaiting a deposit ({current['stage']})", request_id)
            if current.get("deposit_transaction_id"):
                raise StateConflictError(f"Request {request_id} already has a recorded deposit", request_id)
            return {
                "deposit_transaction_id": transaction_id,
                "deposit_received_at": datetime.now(timezone.utc).isoformat()
            }

        request = self._transition(request_id, compute, transaction.created_by)
        self._notify_stage(request, "deposit_received")
        return self._try_activate(request_id)

    def approve(self, request_id: str, admin_id: str) -> JointAccountRequest:
        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            if current["stage"] != JointStage.PENDING.value or current["status"] != JointStatus.PENDING.value:
                raise StateConflictError(
                    f"Request {request_id} can not be approved (stage {current['stage']}, status {current['status']})",
                    request_id
                )
            return {"status": JointStatus.APPROVED.value, "approved_by": admin_id}

        request = self._transition(request_id, compute, admin_id, AuditEventType.JOINT_REQUEST_APPROVED)
        self._notify_stage(request, "approved")
        return self._try_activate(request_id)

    def reject(self, request_id: str, admin_id: str, reason: Optional[str] = None) -> JointAccountRequest:
        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            if not JointStage(current["stage"]).is_open or current["status"] != JointStatus.PENDING.value:
                raise StateConflictError(f"Request {request_id} is already decided", request_id)
            return {
                "status": JointStatus.REJECTED.value,
                "stage": JointStage.REJECTED.value,
                "rejection_reason": reason
            }

        request = self._transition(request_id, compute, admin_id, AuditEventType.JOINT_REQUEST_REJECTED)
        self._notify_stage(request, "rejected")
        return request

    def get_request(self, request_id: str) -> Optional[JointAccountRequest]:
        data = self.storage.load(self.table_name, request_id)
        return self._request_from_dict(data) if data else None

    def require_request(self, request_id: str) -> JointAccountRequest:
        request = self.get_request(request_id)
        if not request:
            raise JointRequestNotFoundError(f"Joint account request {request_id} not found", request_id)
        return request

    def requests_for_account(self, account_id: str) -> List[JointAccountRequest]:
        return [self._request_from_dict(d) for d in self.storage.find(self.table_name, {"account_id": account_id})]

    def list_requests(self, status: Optional[JointStatus] = None) -> List[JointAccountRequest]:
        filters = {"status": status.value} if status else {}
        requests = [self._request_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def _try_activate(self, request_id: str) -> JointAccountRequest:
        """Activate once both the approval and the deposit are in, whichever came last"""
        def compute(current: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if not self._request_from_dict(current).ready_to_activate:
                return None
            return {"stage": JointStage.ACTIVATED.value, "activated_at": datetime.now(timezone.utc).isoformat()}

        with self.storage.atomic():
            before = self.require_request(request_id)
            data = compare_and_set(self.storage, self.table_name, request_id, compute,
                                   self.max_retries, JointRequestNotFoundError)
            request = self._request_from_dict(data)
            activated_now = before.stage != JointStage.ACTIVATED and request.stage == JointStage.ACTIVATED
            if activated_now:
                self.accounts.link_joint_partner(request.account_id, request.partner_email)
                self.audit_trail.log_event(
                    event_type=AuditEventType.JOINT_ACCOUNT_ACTIVATED,
                    entity_type="joint_request",
                    entity_id=request_id,
                    metadata={"account_id": request.account_id, "partner_email": request.partner_email},
                    user_id=request.approved_by
                )

        if activated_now:
            log_action(self.logger, "info", "Joint account activated",
                       action="activate_joint_account", resource=f"account:{request.account_id}")
            self._notify_stage(request, "activated")
        return request

    def _transition(self, request_id: str, compute: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
                    actor_id: Optional[str],
                    event_type: AuditEventType = AuditEventType.JOINT_REQUEST_UPDATED) -> JointAccountRequest:
        with self.storage.atomic():
            data = compare_and_set(self.storage, self.table_name, request_id, compute,
                                   self.max_retries, JointRequestNotFoundError)
            request = self._request_from_dict(data)
            self._audit(request_id, actor_id, {
                "stage": request.stage.value,
                "status": request.status.value,
                "otp_verified": request.otp_verified,
                "deposit_recorded": request.deposit_recorded
            }, event_type)
        return request

    def _deposit_for(self, request: JointAccountRequest) -> Decimal:
        account = self.accounts.require_account(request.account_id)
        return (account.balance * request.required_deposit_percentage).quantize(CENT, rounding=ROUND_HALF_UP)

    def _audit(self, request_id: str, actor_id: Optional[str], details: Dict[str, Any],
               event_type: AuditEventType = AuditEventType.JOINT_REQUEST_UPDATED) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="joint_request",
            entity_id=request_id,
            metadata=details,
            user_id=actor_id
        )

    def _notify_stage(self, request: JointAccountRequest, event: str) -> None:
        """Tell the primary holder (by user id) and the partner (by email)"""
        requester = self.profiles.get_profile(request.requester_user_id)
        account = self.accounts.get_account(request.account_id)
        primary_message, partner_message, kind = _stage_messages(
            event,
            partner=request.partner_full_name or "your partner",
            primary=requester.full_name if requester else "Account holder",
            deposit=f"${request.deposit_amount:.2f}" if request.deposit_amount is not None else "security",
            account_number=account.account_number if account else ""
        )
        metadata = {"request_id": request.id, "stage": event}
        self.notifications.enqueue(request.requester_user_id, "Joint Account Update", primary_message, kind,
                                   metadata=metadata)
        if request.partner_email:
            self.notifications.enqueue(request.partner_email, "Joint Account Update", partner_message, kind,
                                       recipient_type=RecipientType.EMAIL, metadata=metadata)

    def _request_from_dict(self, data: Dict) -> JointAccountRequest:
        def parse_time(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return JointAccountRequest(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            requester_user_id=data['requester_user_id'],
            stage=JointStage(data['stage']),
            status=JointStatus(data['status']),
            required_deposit_percentage=Decimal(data['required_deposit_percentage']),
            partner_full_name=data.get('partner_full_name'),
            partner_email=data.get('partner_email'),
            partner_phone=data.get('partner_phone'),
            partner_ssn_last4=data.get('partner_ssn_last4'),
            partner_address=data.get('partner_address'),
            partner_id_document_url=data.get('partner_id_document_url'),
            partner_drivers_license_url=data.get('partner_drivers_license_url'),
            terms_accepted=data.get('terms_accepted', False),
            deposit_amount=Decimal(data['deposit_amount']) if data.get('deposit_amount') is not None else None,
            submitted_at=parse_time('submitted_at'),
            otp_verified=data.get('otp_verified', False),
            deposit_transaction_id=data.get('deposit_transaction_id'),
            deposit_received_at=parse_time('deposit_received_at'),
            approved_by=data.get('approved_by'),
            rejection_reason=data.get('rejection_reason'),
            activated_at=parse_time('activated_at'),
            version=data.get('version', 1)
        )
