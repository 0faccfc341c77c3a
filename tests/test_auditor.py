"""
Tests for the consistency auditor and its repairs

Drift is created by writing flags directly, the way older tooling and
partial failures left real records behind.
"""

import pytest

from vault_core.auditor import IssueCode, RepairAction, Severity
from vault_core.errors import ProfileNotFoundError, StateConflictError
from vault_core.profiles import AccountType, ApplicationStatus

from support import build_system, onboard_customer


class TestConsistencyAudit:

    def setup_method(self):
        self.system = build_system()
        self.auditor = self.system.auditor
        self.profiles = self.system.profiles
        self.storage = self.system.storage

    def force_flags(self, user_id, **flags):
        """Write profile flags without the projection or eligibility checks"""
        self.storage.update("profiles", user_id, flags)

    def force_application(self, application_id, **fields):
        self.storage.update("account_applications", application_id, fields)

    def test_consistent_user_has_no_issues(self):
        profile, _ = onboard_customer(self.system, "clean@example.com")
        report = self.auditor.audit_user(profile.id)
        assert report.issues == []
        assert self.auditor.suggested_repairs(report) == []

    def test_qr_without_email(self):
        signup = self.system.onboarding.sign_up("qr@example.com", "Q R")
        self.force_flags(signup.profile.id, qr_verified=True)
        self.force_application(signup.application.id, qr_code_verified=True)

        report = self.auditor.audit_user(signup.profile.id)
        assert report.codes == [IssueCode.QR_WITHOUT_EMAIL]
        assert report.issues[0].severity is Severity.MEDIUM

    def test_transact_without_qr(self):
        profile, _ = onboard_customer(self.system, "noqr@example.com")
        self.force_flags(profile.id, qr_verified=False)
        self.force_application(self.profiles.get_application_for_user(profile.id).id, qr_code_verified=False)

        report = self.auditor.audit_user(profile.id)
        assert report.codes == [IssueCode.TRANSACT_WITHOUT_QR]
        assert report.issues[0].severity is Severity.HIGH

    def test_missing_application(self):
        profile = self.profiles.create_profile("orphan@example.com", "Orphan User")
        report = self.auditor.audit_user(profile.id)
        assert report.codes == [IssueCode.MISSING_APPLICATION]
        assert self.auditor.suggested_repairs(report) == [RepairAction.CREATE_APPLICATION]

    def test_approved_but_blocked(self):
        signup = self.system.onboarding.sign_up("blocked@example.com", "Blocked User")
        self.system.onboarding.verify_secret_key(signup.profile.id, signup.application.qr_code_secret)
        self.system.onboarding.approve_application(signup.application.id, "admin-1")
        self.force_flags(signup.profile.id, can_transact=False)

        report = self.auditor.audit_user(signup.profile.id)
        assert report.codes == [IssueCode.APPROVED_BUT_BLOCKED]
        assert self.auditor.suggested_repairs(report) == [RepairAction.SET_CAN_TRANSACT]

    def test_transacting_while_pending(self):
        signup = self.system.onboarding.sign_up("early@example.com", "Early Bird")
        self.system.onboarding.verify_secret_key(signup.profile.id, signup.application.qr_code_secret)
        self.force_flags(signup.profile.id, can_transact=True)

        report = self.auditor.audit_user(signup.profile.id)
        assert report.codes == [IssueCode.TRANSACTING_WHILE_PENDING, IssueCode.TRANSACT_WITHOUT_ACCOUNT]
        assert self.auditor.suggested_repairs(report) == [
            RepairAction.APPROVE_APPLICATION, RepairAction.CREATE_ACCOUNT
        ]

    def test_transacting_while_pending_with_account(self):
        signup = self.system.onboarding.sign_up("eager@example.com", "Eager Bird")
        self.system.onboarding.verify_secret_key(signup.profile.id, signup.application.qr_code_secret)
        self.force_flags(signup.profile.id, can_transact=True)
        self.system.accounts.open_account(signup.profile.id, AccountType.CHECKING)

        report = self.auditor.audit_user(signup.profile.id)
        assert report.codes == [IssueCode.TRANSACTING_WHILE_PENDING]
        assert self.auditor.suggested_repairs(report) == [RepairAction.APPROVE_APPLICATION]

    def test_transact_after_account_closed(self):
        profile, account = onboard_customer(self.system, "closed@example.com")
        self.system.accounts.close_account(account.id, "admin-1", "Customer request")

        report = self.auditor.audit_user(profile.id)
        assert report.codes == [IssueCode.TRANSACT_WITHOUT_ACCOUNT]
        assert self.auditor.suggested_repairs(report) == [RepairAction.CREATE_ACCOUNT]

    def test_transact_with_account_record_gone(self):
        profile, account = onboard_customer(self.system, "gone@example.com")
        self.storage.delete("accounts", account.id)

        report = self.auditor.audit_user(profile.id)
        assert report.codes == [IssueCode.TRANSACT_WITHOUT_ACCOUNT]
        assert not report.has_active_account
        assert self.auditor.suggested_repairs(report) == [RepairAction.CREATE_ACCOUNT]

    def test_verification_flag_mismatch(self):
        profile, _ = onboard_customer(self.system, "mismatch@example.com")
        application = self.profiles.get_application_for_user(profile.id)
        self.force_application(application.id, qr_code_verified=False)

        report = self.auditor.audit_user(profile.id)
        assert report.codes == [IssueCode.VERIFICATION_FLAG_MISMATCH]
        assert report.issues[0].severity is Severity.ROOT_CAUSE
        assert self.auditor.suggested_repairs(report) == [RepairAction.SET_QR_VERIFIED]

    def test_audit_all_filters(self):
        onboard_customer(self.system, "clean@example.com")
        orphan = self.profiles.create_profile("orphan@example.com", "Orphan User")

        assert len(self.auditor.audit_all()) == 2
        flagged = self.auditor.audit_all(only_with_issues=True)
        assert [r.user_id for r in flagged] == [orphan.id]

    def test_unknown_user(self):
        with pytest.raises(ProfileNotFoundError):
            self.auditor.audit_user("ghost")


class TestRepairs:

    def setup_method(self):
        self.system = build_system()
        self.auditor = self.system.auditor
        self.profiles = self.system.profiles
        self.storage = self.system.storage

    def repair_events(self, user_id):
        return [e for e in self.system.audit_trail.get_events_for_entity("profile", user_id)
                if e.action_type == "repair_applied"]

    def test_create_application_is_idempotent_and_audited(self):
        profile = self.profiles.create_profile("orphan@example.com", "Orphan User")

        first = self.auditor.repair(profile.id, RepairAction.CREATE_APPLICATION, "admin-1")
        second = self.auditor.repair(profile.id, RepairAction.CREATE_APPLICATION, "admin-1")

        assert first.changed and not second.changed
        application = self.profiles.get_application_for_user(profile.id)
        assert application.status is ApplicationStatus.APPROVED
        assert application.account_type is AccountType.CHECKING
        assert len(self.repair_events(profile.id)) == 1
        assert self.repair_events(profile.id)[0].actor_id == "admin-1"

    def test_set_email_verified(self):
        signup = self.system.onboarding.sign_up("qr@example.com", "Q R")
        self.storage.update("profiles", signup.profile.id, {"qr_verified": True})

        result = self.auditor.repair(signup.profile.id, RepairAction.SET_EMAIL_VERIFIED, "admin-1")
        assert result.changed
        assert self.profiles.require_profile(signup.profile.id).email_verified

    def test_set_qr_verified_resyncs_projection(self):
        profile, _ = onboard_customer(self.system, "mismatch@example.com")
        application = self.profiles.get_application_for_user(profile.id)
        self.storage.update("account_applications", application.id, {"qr_code_verified": False})

        result = self.auditor.repair(profile.id, RepairAction.SET_QR_VERIFIED, "admin-1")

        assert result.changed
        assert self.auditor.audit_user(profile.id).issues == []

    def test_set_can_transact_requires_eligibility(self):
        signup = self.system.onboarding.sign_up("pending@example.com", "Pending User")
        with pytest.raises(StateConflictError):
            self.auditor.repair(signup.profile.id, RepairAction.SET_CAN_TRANSACT, "admin-1")

    def test_approve_rejected_application_refused(self):
        signup = self.system.onboarding.sign_up("rejected@example.com", "Rejected User")
        self.system.onboarding.reject_application(signup.application.id, "admin-1")
        with pytest.raises(StateConflictError):
            self.auditor.repair(signup.profile.id, RepairAction.APPROVE_APPLICATION, "admin-1")

    def test_bulk_repair_with_suggestions_clears_issues(self):
        orphan = self.profiles.create_profile("orphan@example.com", "Orphan User")
        self.storage.update("profiles", orphan.id, {"qr_verified": True, "email_verified": True})

        early = self.system.onboarding.sign_up("early@example.com", "Early Bird")
        self.system.onboarding.verify_secret_key(early.profile.id, early.application.qr_code_secret)
        self.storage.update("profiles", early.profile.id, {"can_transact": True})

        results = self.auditor.bulk_repair([orphan.id, early.profile.id, "ghost"], "admin-1")

        assert all(r.success for r in results if r.user_id != "ghost")
        assert [r.success for r in results if r.user_id == "ghost"] == [False]
        ghost = [r for r in results if r.user_id == "ghost"][0]
        assert ghost.action is None
        assert ghost.error_type == "profile_not_found"
        # Only the application is pre-selected on the first pass
        orphan_actions = [r.action for r in results if r.user_id == orphan.id]
        assert orphan_actions == [RepairAction.CREATE_APPLICATION]

        assert self.auditor.audit_user(early.profile.id).issues == []
        assert self.system.accounts.has_active_account(early.profile.id)

        # Second pass over the orphan picks up what the first one unlocked
        follow_up = self.auditor.bulk_repair([orphan.id], "admin-1")
        assert [r.action for r in follow_up] == [RepairAction.SET_CAN_TRANSACT]
        follow_up = self.auditor.bulk_repair([orphan.id], "admin-1")
        assert [r.action for r in follow_up] == [RepairAction.CREATE_ACCOUNT]
        assert self.auditor.audit_user(orphan.id).issues == []

    def test_bulk_repair_explicit_actions_in_order(self):
        signup = self.system.onboarding.sign_up("order@example.com", "Order User")
        self.storage.update("profiles", signup.profile.id, {"qr_verified": True, "email_verified": True})
        self.storage.update("account_applications", signup.application.id, {"qr_code_verified": True})

        results = self.auditor.bulk_repair(
            [signup.profile.id], "admin-1",
            actions=[RepairAction.CREATE_ACCOUNT, RepairAction.SET_CAN_TRANSACT, RepairAction.APPROVE_APPLICATION]
        )

        assert [r.action for r in results] == [
            RepairAction.APPROVE_APPLICATION, RepairAction.SET_CAN_TRANSACT, RepairAction.CREATE_ACCOUNT
        ]
        assert all(r.success and r.changed for r in results)
        assert self.system.onboarding.status(signup.profile.id).may_transact
