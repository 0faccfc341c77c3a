"""
Consistency Auditor

Finds and repairs drift between a user's profile, account application and
accounts. Detection never raises for an inconsistent user; it reports.
Repairs are explicit, one user and one concern at a time, safe to repeat,
and recorded in the admin action log.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .errors import StateConflictError, VaultError
from .lifecycle import LifecycleState, OnboardingService, derive_state
from .logging_config import get_logger, log_action
from .profiles import (
    AccountApplication, AccountType, ApplicationStatus, Profile, ProfileManager
)


class Severity(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    ROOT_CAUSE = "root_cause"


class IssueCode(Enum):
    QR_WITHOUT_EMAIL = "QR verified but email not verified"
    TRANSACT_WITHOUT_QR = "Can transact but QR not verified"
    MISSING_APPLICATION = "No account application record"
    APPROVED_BUT_BLOCKED = "Application approved but can't transact"
    TRANSACTING_WHILE_PENDING = "Application pending but can transact"
    VERIFICATION_FLAG_MISMATCH = "QR verification mismatch between tables"
    TRANSACT_WITHOUT_ACCOUNT = "Can transact but no active account"

    @property
    def description(self) -> str:
        return self.value


SEVERITIES = {
    IssueCode.QR_WITHOUT_EMAIL: Severity.MEDIUM,
    IssueCode.TRANSACT_WITHOUT_QR: Severity.HIGH,
    IssueCode.MISSING_APPLICATION: Severity.MEDIUM,
    IssueCode.APPROVED_BUT_BLOCKED: Severity.MEDIUM,
    IssueCode.TRANSACTING_WHILE_PENDING: Severity.HIGH,
    IssueCode.VERIFICATION_FLAG_MISMATCH: Severity.ROOT_CAUSE,
    IssueCode.TRANSACT_WITHOUT_ACCOUNT: Severity.MEDIUM,
}


class RepairAction(Enum):
    """Declared in the order bulk repair applies them"""
    SET_EMAIL_VERIFIED = "set_email_verified"
    SET_QR_VERIFIED = "set_qr_verified"
    CREATE_APPLICATION = "create_application"
    APPROVE_APPLICATION = "approve_application"
    SET_CAN_TRANSACT = "set_can_transact"
    CREATE_ACCOUNT = "create_account"


REPAIR_ORDER = list(RepairAction)


@dataclass(frozen=True)
class Issue:
    code: IssueCode
    severity: Severity

    @property
    def description(self) -> str:
        return self.code.description


@dataclass
class UserAuditReport:
    user_id: str
    email: str
    full_name: str
    email_verified: bool
    qr_verified: bool
    can_transact: bool
    application_id: Optional[str]
    application_status: Optional[ApplicationStatus]
    application_qr_verified: Optional[bool]
    has_active_account: bool
    state: LifecycleState
    issues: List[Issue] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return bool(self.issues)

    @property
    def codes(self) -> List[IssueCode]:
        return [issue.code for issue in self.issues]


@dataclass
class RepairResult:
    user_id: str
    action: Optional[RepairAction]  # None when the user could not be audited
    success: bool
    changed: bool = False
    detail: Optional[str] = None
    error_type: Optional[str] = None


def find_issues(profile: Profile, application: Optional[AccountApplication],
                has_active_account: bool) -> List[Issue]:
    """Every rule is checked independently; a user may trip several"""
    codes = []
    if profile.qr_verified and not profile.email_verified:
        codes.append(IssueCode.QR_WITHOUT_EMAIL)
    if profile.can_transact and not profile.qr_verified:
        codes.append(IssueCode.TRANSACT_WITHOUT_QR)
    if application is None:
        codes.append(IssueCode.MISSING_APPLICATION)
    else:
        if application.status == ApplicationStatus.APPROVED and not profile.can_transact:
            codes.append(IssueCode.APPROVED_BUT_BLOCKED)
        if application.status == ApplicationStatus.PENDING and profile.can_transact:
            codes.append(IssueCode.TRANSACTING_WHILE_PENDING)
        if application.qr_code_verified != profile.qr_verified:
            codes.append(IssueCode.VERIFICATION_FLAG_MISMATCH)
    if profile.can_transact and not has_active_account:
        codes.append(IssueCode.TRANSACT_WITHOUT_ACCOUNT)
    return [Issue(code, SEVERITIES[code]) for code in codes]


class ConsistencyAuditor:

    def __init__(self, profiles: ProfileManager, accounts: AccountManager,
                 onboarding: OnboardingService, audit_trail: AuditTrail):
        self.profiles = profiles
        self.accounts = accounts
        self.onboarding = onboarding
        self.audit_trail = audit_trail
        self.logger = get_logger("vault.auditor")

    def audit_user(self, user_id: str) -> UserAuditReport:
        return self._report(self.profiles.require_profile(user_id))

    def audit_all(self, only_with_issues: bool = False) -> List[UserAuditReport]:
        reports = [self._report(profile) for profile in self.profiles.list_profiles()]
        if only_with_issues:
            reports = [r for r in reports if r.has_issues]
        log_action(
            self.logger, "info", "Consistency audit finished", action="audit_all",
            extra={"users": len(reports), "with_issues": sum(1 for r in reports if r.has_issues)}
        )
        return reports

    def _report(self, profile: Profile) -> UserAuditReport:
        application = self.profiles.get_application_for_user(profile.id)
        has_account = self.accounts.has_active_account(profile.id)
        return UserAuditReport(
            user_id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            email_verified=profile.email_verified,
            qr_verified=profile.qr_verified,
            can_transact=profile.can_transact,
            application_id=application.id if application else None,
            application_status=application.status if application else None,
            application_qr_verified=application.qr_code_verified if application else None,
            has_active_account=has_account,
            state=derive_state(profile, application),
            issues=find_issues(profile, application, has_account)
        )

    def suggested_repairs(self, report: UserAuditReport) -> List[RepairAction]:
        """Repairs an admin would normally pre-select for this report"""
        suggestions = []
        if report.qr_verified and not report.email_verified:
            suggestions.append(RepairAction.SET_EMAIL_VERIFIED)
        if report.qr_verified and report.application_qr_verified is False:
            suggestions.append(RepairAction.SET_QR_VERIFIED)
        if report.application_status is None:
            suggestions.append(RepairAction.CREATE_APPLICATION)
        if report.application_status == ApplicationStatus.PENDING and report.can_transact:
            suggestions.append(RepairAction.APPROVE_APPLICATION)
        if (not report.can_transact and report.qr_verified
                and report.application_status == ApplicationStatus.APPROVED):
            suggestions.append(RepairAction.SET_CAN_TRANSACT)
        if report.can_transact and not report.has_active_account:
            suggestions.append(RepairAction.CREATE_ACCOUNT)
        return suggestions

    def repair(self, user_id: str, action: RepairAction, actor_id: str) -> RepairResult:
        """
        Apply one repair to one user.

        Returns a result with ``changed=False`` when there was nothing to do.

        Raises:
            ProfileNotFoundError: If the user does not exist
            StateConflictError: If the repair is not allowed in the current state
        """
        profile = self.profiles.require_profile(user_id)
        application = self.profiles.get_application_for_user(user_id)
        detail = self._apply(profile, application, action, actor_id)
        changed = detail is not None

        if changed:
            self.audit_trail.log_event(
                event_type=AuditEventType.REPAIR_APPLIED,
                entity_type="profile",
                entity_id=user_id,
                metadata={"action": action.value, "detail": detail},
                user_id=actor_id
            )
        log_action(
            self.logger, "info", f"Repair {action.value}: {detail or 'nothing to change'}",
            user_id=actor_id, action="repair", resource=f"profile:{user_id}"
        )
        return RepairResult(user_id, action, True, changed, detail or "Already consistent")

    def _apply(self, profile: Profile, application: Optional[AccountApplication],
               action: RepairAction, actor_id: str) -> Optional[str]:
        """Perform the repair; returns a description, or None when it was a no-op"""
        user_id = profile.id

        if action is RepairAction.SET_EMAIL_VERIFIED:
            if profile.email_verified:
                return None
            self.profiles.set_flags(user_id, email_verified=True)
            return "email_verified set"

        if action is RepairAction.SET_QR_VERIFIED:
            if profile.qr_verified and (application is None or application.qr_code_verified):
                return None
            self.profiles.set_flags(user_id, qr_verified=True)
            return "qr_verified set on profile and application"

        if action is RepairAction.SET_CAN_TRANSACT:
            if profile.can_transact:
                return None
            self.onboarding.grant_transact(user_id, actor_id)
            return "can_transact granted"

        if action is RepairAction.CREATE_APPLICATION:
            if application is not None:
                return None
            created = self.profiles.create_application(
                user_id, AccountType.CHECKING, ApplicationStatus.APPROVED, decided_by=actor_id
            )
            return f"approved checking application {created.id} created"

        if action is RepairAction.APPROVE_APPLICATION:
            if application is None:
                raise StateConflictError(f"User {user_id} has no application to approve", user_id)
            if application.status == ApplicationStatus.APPROVED:
                return None
            self.profiles.decide_application(application.id, ApplicationStatus.APPROVED, actor_id)
            return f"application {application.id} approved"

        if action is RepairAction.CREATE_ACCOUNT:
            if self.accounts.has_active_account(user_id):
                return None
            account = self.accounts.open_account(user_id, AccountType.CHECKING, actor_id=actor_id)
            return f"checking account {account.account_number} opened"

        raise ValueError(f"Unknown repair action: {action}")

    def bulk_repair(self, user_ids: Iterable[str], actor_id: str,
                    actions: Optional[Iterable[RepairAction]] = None) -> List[RepairResult]:
        """
        Repair many users. Without explicit ``actions`` each user gets their
        suggested repairs. Every (user, action) pair gets its own result; a user
        that can not be audited gets a single failed result with no action.
        """
        requested = list(actions) if actions is not None else None
        results = []
        for user_id in user_ids:
            try:
                planned = requested if requested is not None else self.suggested_repairs(self.audit_user(user_id))
            except VaultError as e:
                results.append(RepairResult(user_id, None, False, detail=e.message, error_type=e.error_type))
                continue
            for action in sorted(set(planned), key=REPAIR_ORDER.index):
                try:
                    results.append(self.repair(user_id, action, actor_id))
                except VaultError as e:
                    results.append(RepairResult(user_id, action, False, detail=e.message, error_type=e.error_type))

        log_action(
            self.logger, "info", "Bulk repair finished", user_id=actor_id, action="bulk_repair",
            extra={"succeeded": sum(1 for r in results if r.success),
                   "failed": sum(1 for r in results if not r.success)}
        )
        return results
