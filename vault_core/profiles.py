"""
Identity and Application Records

Profiles carry a user's verification flags; account applications carry the
admin decision and the secret key the user must echo back. The profile's
``qr_verified`` flag is the single source of truth for secret-key
verification: the application's ``qr_code_verified`` column is a read-only
projection that this module writes in the same step as the profile flag.
"""

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .errors import (
    ApplicationNotFoundError, ProfileNotFoundError, StateConflictError, ValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, compare_and_set


class ApplicationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ApplicationStatus.PENDING


class AccountType(Enum):
    """Product requested on the application / held as an account"""
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"

    @property
    def is_asset(self) -> bool:
        return self in (AccountType.CHECKING, AccountType.SAVINGS)


@dataclass
class Profile(StorageRecord):
    """Per-user verification state; ``id`` is the user id"""
    email: str
    full_name: str
    email_verified: bool = False
    qr_verified: bool = False
    can_transact: bool = False
    pin_hash: Optional[str] = None
    version: int = 1

    @property
    def user_id(self) -> str:
        return self.id

    @property
    def has_pin(self) -> bool:
        return self.pin_hash is not None


@dataclass
class AccountApplication(StorageRecord):
    user_id: str
    email: str
    full_name: str
    account_type: AccountType
    status: ApplicationStatus
    qr_code_secret: str
    qr_code_verified: bool = False
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    version: int = 1


def _hash_pin(pin: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode(), salt.encode(), 100_000).hex()
    return f"{salt}${digest}"


def check_pin(pin_hash: str, pin: str) -> bool:
    salt, _ = pin_hash.split("$", 1)
    return hmac.compare_digest(_hash_pin(pin, salt), pin_hash)


def validate_pin(pin: str) -> None:
    if not pin or not pin.isdigit() or not 4 <= len(pin) <= 6:
        raise ValidationError("PIN must be 4 to 6 digits")


class ProfileManager:
    """
    Reads and writes profiles and applications.

    All flag writes go through versioned compare-and-set so concurrent admin
    actions and user verification steps never overwrite each other.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, max_retries: int = 5):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_retries = max_retries
        self.profiles_table = "profiles"
        self.applications_table = "account_applications"
        self.logger = get_logger("vault.profiles")

    # Profiles

    def create_profile(self, email: str, full_name: str, pin: Optional[str] = None,
                       user_id: Optional[str] = None) -> Profile:
        email = email.strip().lower()
        if not email or "@" not in email:
            raise ValidationError(f"Invalid email address: {email!r}")
        if not full_name or not full_name.strip():
            raise ValidationError("Full name is required")
        if self.find_profile_by_email(email):
            raise StateConflictError(f"A profile for {email} already exists")
        if pin is not None:
            validate_pin(pin)

        now = datetime.now(timezone.utc)
        profile = Profile(
            id=user_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            email=email,
            full_name=full_name.strip(),
            pin_hash=_hash_pin(pin) if pin else None
        )
        self.storage.insert(self.profiles_table, profile.id, profile.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.PROFILE_CREATED,
            entity_type="profile",
            entity_id=profile.id,
            metadata={"email": email},
            user_id=profile.id
        )
        return profile

    def get_profile(self, user_id: str) -> Optional[Profile]:
        data = self.storage.load(self.profiles_table, user_id)
        return self._profile_from_dict(data) if data else None

    def require_profile(self, user_id: str) -> Profile:
        profile = self.get_profile(user_id)
        if not profile:
            raise ProfileNotFoundError(f"Profile {user_id} not found", user_id)
        return profile

    def find_profile_by_email(self, email: str) -> Optional[Profile]:
        found = self.storage.find(self.profiles_table, {"email": email.strip().lower()})
        return self._profile_from_dict(found[0]) if found else None

    def list_profiles(self) -> List[Profile]:
        return [self._profile_from_dict(data) for data in self.storage.load_all(self.profiles_table)]

    def set_flags(self, user_id: str, **flags: bool) -> Profile:
        """
        Set verification flags on a profile.

        Only ``email_verified``, ``qr_verified`` and ``can_transact`` may be
        set. Callers that raise ``can_transact`` are responsible for checking
        eligibility first (see OnboardingService.grant_transact).
        """
        allowed = {"email_verified", "qr_verified", "can_transact"}
        unknown = set(flags) - allowed
        if unknown:
            raise ValidationError(f"Unknown profile flags: {sorted(unknown)}")

        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            return {name: value for name, value in flags.items() if current.get(name) != value}

        with self.storage.atomic():
            data = compare_and_set(self.storage, self.profiles_table, user_id, compute,
                                   self.max_retries, ProfileNotFoundError)
            if "qr_verified" in flags:
                self._project_qr_flag(user_id, flags["qr_verified"])
        return self._profile_from_dict(data)

    def set_pin(self, user_id: str, pin: str) -> Profile:
        validate_pin(pin)
        pin_hash = _hash_pin(pin)
        data = compare_and_set(self.storage, self.profiles_table, user_id,
                               lambda current: {"pin_hash": pin_hash},
                               self.max_retries, ProfileNotFoundError)
        return self._profile_from_dict(data)

    def _project_qr_flag(self, user_id: str, value: bool) -> None:
        application = self.get_application_for_user(user_id)
        if application and application.qr_code_verified != value:
            compare_and_set(
                self.storage, self.applications_table, application.id,
                lambda current: {"qr_code_verified": value} if current.get("qr_code_verified") != value else None,
                self.max_retries, ApplicationNotFoundError
            )

    # Applications

    def create_application(
        self,
        user_id: str,
        account_type: AccountType = AccountType.CHECKING,
        status: ApplicationStatus = ApplicationStatus.PENDING,
        decided_by: Optional[str] = None
    ) -> AccountApplication:
        """
        Create the user's application. The verification projection is seeded
        from the profile so both records agree from the start.
        """
        profile = self.require_profile(user_id)
        if self.get_application_for_user(user_id):
            raise StateConflictError(f"User {user_id} already has an account application", user_id)

        now = datetime.now(timezone.utc)
        application = AccountApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            email=profile.email,
            full_name=profile.full_name,
            account_type=account_type,
            status=status,
            qr_code_secret=str(uuid.uuid4()),
            qr_code_verified=profile.qr_verified,
            decided_by=decided_by,
            decided_at=now if status.is_terminal else None
        )
        self.storage.insert(self.applications_table, application.id, application.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.APPLICATION_SUBMITTED,
            entity_type="application",
            entity_id=application.id,
            metadata={"account_type": account_type.value, "status": status.value},
            user_id=decided_by or user_id
        )
        return application

    def get_application(self, application_id: str) -> Optional[AccountApplication]:
        data = self.storage.load(self.applications_table, application_id)
        return self._application_from_dict(data) if data else None

    def require_application(self, application_id: str) -> AccountApplication:
        application = self.get_application(application_id)
        if not application:
            raise ApplicationNotFoundError(f"Application {application_id} not found", application_id)
        return application

    def get_application_for_user(self, user_id: str) -> Optional[AccountApplication]:
        found = self.storage.find(self.applications_table, {"user_id": user_id})
        if not found:
            return None
        applications = sorted((self._application_from_dict(d) for d in found), key=lambda a: a.created_at)
        return applications[-1]

    def list_applications(self, status: Optional[ApplicationStatus] = None) -> List[AccountApplication]:
        filters = {"status": status.value} if status else {}
        applications = [self._application_from_dict(d) for d in self.storage.find(self.applications_table, filters)]
        applications.sort(key=lambda a: a.created_at)
        return applications

    def decide_application(self, application_id: str, status: ApplicationStatus, actor_id: str,
                           reason: Optional[str] = None) -> AccountApplication:
        """
        Move a pending application to approved or rejected.

        Raises:
            StateConflictError: If the application already has a decision
        """
        if not status.is_terminal:
            raise ValidationError("An application can only be decided as approved or rejected")

        def compute(current: Dict[str, Any]) -> Dict[str, Any]:
            if current["status"] != ApplicationStatus.PENDING.value:
                raise StateConflictError(
                    f"Application {application_id} is already {current['status']}", application_id
                )
            return {
                "status": status.value,
                "decided_by": actor_id,
                "decided_at": datetime.now(timezone.utc).isoformat(),
                "rejection_reason": reason
            }

        data = compare_and_set(self.storage, self.applications_table, application_id, compute,
                               self.max_retries, ApplicationNotFoundError)
        log_action(
            self.logger, "info", f"Application {status.value}",
            user_id=actor_id, action=f"{status.value}_application",
            resource=f"application:{application_id}"
        )
        return self._application_from_dict(data)

    # Serialization

    def _profile_from_dict(self, data: Dict) -> Profile:
        return Profile(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            email=data['email'],
            full_name=data['full_name'],
            email_verified=data.get('email_verified', False),
            qr_verified=data.get('qr_verified', False),
            can_transact=data.get('can_transact', False),
            pin_hash=data.get('pin_hash'),
            version=data.get('version', 1)
        )

    def _application_from_dict(self, data: Dict) -> AccountApplication:
        decided_at = data.get('decided_at')
        return AccountApplication(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            email=data['email'],
            full_name=data['full_name'],
            account_type=AccountType(data['account_type']),
            status=ApplicationStatus(data['status']),
            qr_code_secret=data['qr_code_secret'],
            qr_code_verified=data.get('qr_code_verified', False),
            decided_by=data.get('decided_by'),
            decided_at=datetime.fromisoformat(decided_at) if decided_at else None,
            rejection_reason=data.get('rejection_reason'),
            version=data.get('version', 1)
        )
