"""
Account Lifecycle Module

The verification gate decides whether a user may sign in and whether they
may move money. ``evaluate`` is a pure function over a profile and its
application; everything that changes those records lives in
OnboardingService below it.

Gate precedence (first match wins):

1. no application on file        -> blocked
2. application rejected          -> blocked, whatever the other flags say
3. application pending           -> blocked, under review
4. email unverified (only when the policy asks for it) -> blocked
5. secret key (QR) not verified  -> blocked
6. can_transact                  -> fully eligible
7. otherwise                     -> may sign in, may not transact
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .accounts import Account, AccountManager
from .audit import AuditTrail, AuditEventType
from .errors import StateConflictError, ValidationError
from .logging_config import get_logger, log_action
from .messaging import EmailDispatcher
from .notifications import NotificationService, NotificationTemplates
from .profiles import (
    AccountApplication, AccountType, ApplicationStatus, Profile, ProfileManager, check_pin
)


class BlockReason(Enum):
    APPLICATION_MISSING = "No account application on file. Please contact support."
    APPLICATION_REJECTED = "Application rejected, contact support."
    UNDER_REVIEW = "Your account application is under review."
    EMAIL_VERIFICATION_REQUIRED = "Please verify your email address to continue."
    QR_VERIFICATION_REQUIRED = "Please verify your secret key to continue."
    TRANSACT_NOT_GRANTED = "Transactions are not yet enabled for your account."
    INCORRECT_PIN = "Incorrect PIN."

    @property
    def message(self) -> str:
        return self.value


class LifecycleState(Enum):
    APPLIED = "applied"              # Profile exists, no application record
    EMAIL_PENDING = "email_pending"
    QR_PENDING = "qr_pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"            # Approved and verified, not yet transacting
    ACTIVE = "active"
    REJECTED = "rejected"


@dataclass(frozen=True)
class VerificationPolicy:
    """When False, secret-key verification stands in for email verification"""
    require_email_verification: bool = False


@dataclass(frozen=True)
class BypassPolicy:
    """
    Demo identities that may sign in without completing verification.

    Consulted only at sign-in, never inside ``evaluate``, and never for
    transacting. Always empty in production.
    """
    emails: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, emails: Iterable[str], production: bool) -> 'BypassPolicy':
        if production:
            return cls()
        return cls(frozenset(e.strip().lower() for e in emails if e.strip()))

    def allows(self, email: str) -> bool:
        return email.strip().lower() in self.emails


@dataclass(frozen=True)
class GateDecision:
    may_authenticate: bool
    may_transact: bool
    reason: Optional[BlockReason]
    state: LifecycleState
    bypassed: bool = False

    @property
    def message(self) -> Optional[str]:
        return self.reason.message if self.reason else None


def derive_state(profile: Profile, application: Optional[AccountApplication]) -> LifecycleState:
    """Single lifecycle state for display and reporting"""
    if application is None:
        return LifecycleState.APPLIED
    if application.status == ApplicationStatus.REJECTED:
        return LifecycleState.REJECTED
    if not profile.qr_verified:
        return LifecycleState.QR_PENDING if profile.email_verified else LifecycleState.EMAIL_PENDING
    if application.status == ApplicationStatus.PENDING:
        return LifecycleState.UNDER_REVIEW
    return LifecycleState.ACTIVE if profile.can_transact else LifecycleState.APPROVED


def evaluate(profile: Profile, application: Optional[AccountApplication],
             policy: VerificationPolicy = VerificationPolicy()) -> GateDecision:
    """Pure gate decision; no side effects"""
    state = derive_state(profile, application)

    def blocked(reason: BlockReason) -> GateDecision:
        return GateDecision(False, False, reason, state)

    if application is None:
        return blocked(BlockReason.APPLICATION_MISSING)
    if application.status == ApplicationStatus.REJECTED:
        return blocked(BlockReason.APPLICATION_REJECTED)
    if application.status == ApplicationStatus.PENDING:
        return blocked(BlockReason.UNDER_REVIEW)
    if policy.require_email_verification and not profile.email_verified:
        return blocked(BlockReason.EMAIL_VERIFICATION_REQUIRED)
    if not profile.qr_verified:
        return blocked(BlockReason.QR_VERIFICATION_REQUIRED)
    if profile.can_transact:
        return GateDecision(True, True, None, state)
    return GateDecision(True, False, BlockReason.TRANSACT_NOT_GRANTED, state)


def transact_eligibility(profile: Profile, application: Optional[AccountApplication],
                         policy: VerificationPolicy = VerificationPolicy()) -> GateDecision:
    """The decision the gate would reach if ``can_transact`` were granted"""
    return evaluate(replace(profile, can_transact=True), application, policy)


def normalize_secret(value: str) -> str:
    return value.strip().replace("-", "").replace(" ", "").lower()


@dataclass
class SignupResult:
    profile: Profile
    application: AccountApplication
    secret_sent: bool


@dataclass
class ApplicationDecision:
    application: AccountApplication
    account: Optional[Account] = None
    transact_granted: bool = False


class OnboardingService:
    """State transitions from signup to a transacting customer"""

    def __init__(
        self,
        profiles: ProfileManager,
        accounts: AccountManager,
        audit_trail: AuditTrail,
        notifications: NotificationService,
        email_dispatcher: EmailDispatcher,
        policy: VerificationPolicy = VerificationPolicy(),
        bypass: BypassPolicy = BypassPolicy()
    ):
        self.profiles = profiles
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.email_dispatcher = email_dispatcher
        self.policy = policy
        self.bypass = bypass
        self.storage = profiles.storage
        self.logger = get_logger("vault.lifecycle")

    def sign_up(self, email: str, full_name: str,
                account_type: AccountType = AccountType.CHECKING,
                pin: Optional[str] = None) -> SignupResult:
        """Create the profile and a pending application, then mail the secret key"""
        with self.storage.atomic():
            profile = self.profiles.create_profile(email, full_name, pin=pin)
            application = self.profiles.create_application(profile.id, account_type)

        secret_sent = self.email_dispatcher.send_secret_key(profile.email, application.qr_code_secret)
        log_action(
            self.logger, "info", "User signed up",
            user_id=profile.id, action="sign_up", resource=f"application:{application.id}",
            extra={"account_type": account_type.value, "secret_sent": secret_sent}
        )
        return SignupResult(profile, application, secret_sent)

    def resend_secret_key(self, user_id: str) -> bool:
        profile = self.profiles.require_profile(user_id)
        application = self._require_user_application(user_id)
        return self.email_dispatcher.send_secret_key(profile.email, application.qr_code_secret)

    def verify_email(self, user_id: str) -> Profile:
        profile = self.profiles.set_flags(user_id, email_verified=True)
        self.audit_trail.log_event(
            event_type=AuditEventType.EMAIL_VERIFIED,
            entity_type="profile",
            entity_id=user_id,
            user_id=user_id
        )
        return profile

    def verify_secret_key(self, user_id: str, submitted: str) -> Profile:
        """
        Check the echoed secret key. Hyphens, spaces and case are ignored.

        The key was delivered by email, so a correct echo also proves the email
        address. Transacting is granted right away when the application has
        already been approved.
        """
        application = self._require_user_application(user_id)
        if not submitted or normalize_secret(submitted) != normalize_secret(application.qr_code_secret):
            log_action(self.logger, "warning", "Secret key mismatch",
                       user_id=user_id, action="verify_secret_key", resource=f"application:{application.id}")
            raise ValidationError("Invalid secret key", user_id)

        self.profiles.set_flags(user_id, qr_verified=True, email_verified=True)
        self.audit_trail.log_event(
            event_type=AuditEventType.QR_VERIFIED,
            entity_type="profile",
            entity_id=user_id,
            metadata={"application_id": application.id},
            user_id=user_id
        )
        self._grant_if_eligible(user_id, actor_id=user_id)
        return self.profiles.require_profile(user_id)

    def set_pin(self, user_id: str, pin: str) -> Profile:
        profile = self.profiles.set_pin(user_id, pin)
        self.audit_trail.log_event(
            event_type=AuditEventType.PIN_SET,
            entity_type="profile",
            entity_id=user_id,
            user_id=user_id
        )
        return profile

    def approve_application(self, application_id: str, admin_id: str) -> ApplicationDecision:
        """
        Approve a pending application and open its first account.

        Raises:
            StateConflictError: If the application was already decided
        """
        with self.storage.atomic():
            application = self.profiles.decide_application(application_id, ApplicationStatus.APPROVED, admin_id)
            account = self.accounts.open_account(application.user_id, application.account_type, actor_id=admin_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_APPROVED,
                entity_type="application",
                entity_id=application_id,
                metadata={
                    "user_id": application.user_id,
                    "account_id": account.id,
                    "account_number": account.account_number,
                    "account_type": application.account_type.value
                },
                user_id=admin_id
            )
            granted = self._grant_if_eligible(application.user_id, actor_id=admin_id)

        self.notifications.notify(application.user_id, NotificationTemplates.account_application_approved())
        self.email_dispatcher.send_application_decision(
            application.email, application.full_name, approved=True, account_number=account.account_number
        )
        return ApplicationDecision(application, account, granted)

    def reject_application(self, application_id: str, admin_id: str,
                           reason: Optional[str] = None) -> ApplicationDecision:
        with self.storage.atomic():
            application = self.profiles.decide_application(
                application_id, ApplicationStatus.REJECTED, admin_id, reason
            )
            profile = self.profiles.get_profile(application.user_id)
            if profile and profile.can_transact:
                self.profiles.set_flags(application.user_id, can_transact=False)
            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_REJECTED,
                entity_type="application",
                entity_id=application_id,
                metadata={"user_id": application.user_id, "reason": reason},
                user_id=admin_id
            )

        self.notifications.notify(application.user_id, NotificationTemplates.account_application_rejected())
        self.email_dispatcher.send_application_decision(
            application.email, application.full_name, approved=False, reason=reason
        )
        return ApplicationDecision(application)

    def grant_transact(self, user_id: str, actor_id: str) -> Profile:
        """
        Turn on ``can_transact``. Idempotent.

        Raises:
            StateConflictError: If the gate would still block the user
        """
        profile = self.profiles.require_profile(user_id)
        if profile.can_transact:
            return profile
        application = self.profiles.get_application_for_user(user_id)
        decision = transact_eligibility(profile, application, self.policy)
        if not decision.may_transact:
            raise StateConflictError(f"Cannot enable transactions: {decision.message}", user_id)

        profile = self.profiles.set_flags(user_id, can_transact=True)
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACT_GRANTED,
            entity_type="profile",
            entity_id=user_id,
            metadata={"application_id": application.id},
            user_id=actor_id
        )
        return profile

    def _grant_if_eligible(self, user_id: str, actor_id: str) -> bool:
        profile = self.profiles.require_profile(user_id)
        if profile.can_transact:
            return True
        application = self.profiles.get_application_for_user(user_id)
        if not transact_eligibility(profile, application, self.policy).may_transact:
            return False
        self.grant_transact(user_id, actor_id)
        return True

    def status(self, user_id: str) -> GateDecision:
        profile = self.profiles.require_profile(user_id)
        return evaluate(profile, self.profiles.get_application_for_user(user_id), self.policy)

    def authenticate(self, user_id: str, pin: Optional[str] = None) -> GateDecision:
        """
        Sign-in decision: PIN first, then the bypass list, then the gate.

        A bypassed user may sign in but still transacts only if the gate says so.
        """
        profile = self.profiles.require_profile(user_id)
        application = self.profiles.get_application_for_user(user_id)
        decision = evaluate(profile, application, self.policy)

        if profile.has_pin and (pin is None or not check_pin(profile.pin_hash, pin)):
            decision = GateDecision(False, False, BlockReason.INCORRECT_PIN, decision.state)
        elif not decision.may_authenticate and self.bypass.allows(profile.email):
            decision = GateDecision(True, decision.may_transact, decision.reason, decision.state, bypassed=True)

        log_action(
            self.logger, "info" if decision.may_authenticate else "warning",
            "Sign-in allowed" if decision.may_authenticate else f"Sign-in blocked: {decision.message}",
            user_id=user_id, action="authenticate", resource=f"profile:{user_id}",
            extra={"state": decision.state.value, "bypassed": decision.bypassed}
        )
        return decision

    def _require_user_application(self, user_id: str) -> AccountApplication:
        application = self.profiles.get_application_for_user(user_id)
        if not application:
            raise StateConflictError(f"User {user_id} has no account application", user_id)
        return application
