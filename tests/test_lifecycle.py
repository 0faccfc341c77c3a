"""
Tests for the verification gate and the onboarding workflow
"""

import pytest
from datetime import datetime, timezone

from vault_core.errors import StateConflictError, ValidationError
from vault_core.lifecycle import (
    BlockReason, BypassPolicy, LifecycleState, VerificationPolicy,
    derive_state, evaluate, normalize_secret
)
from vault_core.profiles import AccountApplication, AccountType, ApplicationStatus, Profile

from support import build_system


NOW = datetime(2024, 1, 15, tzinfo=timezone.utc)


def make_profile(email_verified=False, qr_verified=False, can_transact=False):
    return Profile(
        id="user-1", created_at=NOW, updated_at=NOW,
        email="jane@example.com", full_name="Jane Doe",
        email_verified=email_verified, qr_verified=qr_verified, can_transact=can_transact
    )


def make_application(status=ApplicationStatus.APPROVED, qr_code_verified=False):
    return AccountApplication(
        id="app-1", created_at=NOW, updated_at=NOW,
        user_id="user-1", email="jane@example.com", full_name="Jane Doe",
        account_type=AccountType.CHECKING, status=status,
        qr_code_secret="0f8fad5b-d9cb-469f-a165-70867728950e",
        qr_code_verified=qr_code_verified
    )


class TestGateEvaluation:
    """Pure decisions; precedence of block reasons"""

    def test_missing_application_blocks(self):
        decision = evaluate(make_profile(True, True, True), None)
        assert not decision.may_authenticate
        assert decision.reason is BlockReason.APPLICATION_MISSING
        assert decision.state is LifecycleState.APPLIED

    def test_rejected_application_blocks_with_exact_message(self):
        decision = evaluate(make_profile(True, True, True), make_application(ApplicationStatus.REJECTED))
        assert not decision.may_authenticate
        assert not decision.may_transact
        assert decision.message == "Application rejected, contact support."

    def test_pending_application_is_under_review(self):
        decision = evaluate(make_profile(True, True), make_application(ApplicationStatus.PENDING))
        assert decision.reason is BlockReason.UNDER_REVIEW
        assert decision.state is LifecycleState.UNDER_REVIEW

    def test_rejection_takes_precedence_over_verification(self):
        decision = evaluate(make_profile(), make_application(ApplicationStatus.REJECTED))
        assert decision.reason is BlockReason.APPLICATION_REJECTED

    def test_qr_verification_required(self):
        decision = evaluate(make_profile(email_verified=True), make_application())
        assert decision.reason is BlockReason.QR_VERIFICATION_REQUIRED
        assert decision.state is LifecycleState.QR_PENDING

    def test_qr_verification_stands_in_for_email_by_default(self):
        decision = evaluate(make_profile(qr_verified=True, can_transact=True), make_application())
        assert decision.may_authenticate
        assert decision.may_transact

    def test_email_verification_when_policy_requires_it(self):
        policy = VerificationPolicy(require_email_verification=True)
        decision = evaluate(make_profile(qr_verified=True, can_transact=True), make_application(), policy)
        assert decision.reason is BlockReason.EMAIL_VERIFICATION_REQUIRED

    def test_approved_and_verified_but_not_granted(self):
        decision = evaluate(make_profile(True, True, False), make_application())
        assert decision.may_authenticate
        assert not decision.may_transact
        assert decision.reason is BlockReason.TRANSACT_NOT_GRANTED
        assert decision.state is LifecycleState.APPROVED

    def test_fully_active(self):
        decision = evaluate(make_profile(True, True, True), make_application())
        assert decision.may_transact
        assert decision.reason is None
        assert decision.state is LifecycleState.ACTIVE

    def test_derive_state_email_pending(self):
        assert derive_state(make_profile(), make_application(ApplicationStatus.PENDING)) is LifecycleState.EMAIL_PENDING

    def test_normalize_secret(self):
        assert normalize_secret(" 0F8FAD5B-D9CB ") == "0f8fad5bd9cb"


class TestBypassPolicy:

    def test_disabled_in_production(self):
        policy = BypassPolicy.from_settings(["demo@example.com"], production=True)
        assert not policy.allows("demo@example.com")

    def test_case_insensitive_outside_production(self):
        policy = BypassPolicy.from_settings(["Demo@Example.com", " "], production=False)
        assert policy.allows("demo@example.com")
        assert not policy.allows("other@example.com")


class TestOnboarding:

    def setup_method(self):
        self.system = build_system()
        self.onboarding = self.system.onboarding
        self.mail = self.system.email_dispatcher

    def sign_up(self, email="jane@example.com"):
        return self.onboarding.sign_up(email, "Jane Doe")

    def test_sign_up_creates_pending_application_and_sends_secret(self):
        result = self.sign_up()

        assert result.application.status is ApplicationStatus.PENDING
        assert result.secret_sent
        messages = self.mail.messages_to("jane@example.com")
        assert len(messages) == 1
        assert result.application.qr_code_secret in messages[0]["body"]

    def test_duplicate_email_rejected(self):
        self.sign_up()
        with pytest.raises(StateConflictError):
            self.onboarding.sign_up("JANE@example.com", "Jane Again")

    def test_mail_failure_does_not_fail_sign_up(self):
        self.mail.fail = True
        result = self.sign_up()
        assert not result.secret_sent
        assert self.system.profiles.get_profile(result.profile.id) is not None

    def test_secret_key_ignores_hyphens_and_case(self):
        result = self.sign_up()
        typed = result.application.qr_code_secret.replace("-", "").upper()

        profile = self.onboarding.verify_secret_key(result.profile.id, typed)

        assert profile.qr_verified
        assert profile.email_verified
        # Still pending review, so no transacting yet
        assert not profile.can_transact
        application = self.system.profiles.get_application_for_user(result.profile.id)
        assert application.qr_code_verified

    def test_wrong_secret_key(self):
        result = self.sign_up()
        with pytest.raises(ValidationError):
            self.onboarding.verify_secret_key(result.profile.id, "not-the-key")
        assert not self.system.profiles.require_profile(result.profile.id).qr_verified

    def test_approval_after_verification_grants_transact(self):
        result = self.sign_up()
        self.onboarding.verify_secret_key(result.profile.id, result.application.qr_code_secret)

        decision = self.onboarding.approve_application(result.application.id, "admin-1")

        assert decision.transact_granted
        assert decision.account.account_type is AccountType.CHECKING
        assert len(decision.account.account_number) == 9
        status = self.onboarding.status(result.profile.id)
        assert status.may_authenticate and status.may_transact

    def test_verification_after_approval_grants_transact(self):
        result = self.sign_up()
        decision = self.onboarding.approve_application(result.application.id, "admin-1")
        assert not decision.transact_granted
        assert self.onboarding.status(result.profile.id).reason is BlockReason.QR_VERIFICATION_REQUIRED

        profile = self.onboarding.verify_secret_key(result.profile.id, result.application.qr_code_secret)
        assert profile.can_transact

    def test_rejection_blocks_and_revokes(self):
        result = self.sign_up()
        self.onboarding.reject_application(result.application.id, "admin-1", "Incomplete documents")

        decision = self.onboarding.authenticate(result.profile.id)
        assert not decision.may_authenticate
        assert decision.message == "Application rejected, contact support."
        assert not self.system.profiles.require_profile(result.profile.id).can_transact

    def test_application_decided_only_once(self):
        result = self.sign_up()
        self.onboarding.reject_application(result.application.id, "admin-1")
        with pytest.raises(StateConflictError):
            self.onboarding.approve_application(result.application.id, "admin-2")

    def test_grant_transact_requires_eligibility(self):
        result = self.sign_up()
        with pytest.raises(StateConflictError):
            self.onboarding.grant_transact(result.profile.id, "admin-1")

    def test_decisions_are_audited(self):
        result = self.sign_up()
        self.onboarding.approve_application(result.application.id, "admin-9")

        events = self.system.audit_trail.get_events_for_entity("application", result.application.id)
        approved = [e for e in events if e.action_type == "approve_account_application"]
        assert len(approved) == 1
        assert approved[0].actor_id == "admin-9"

    def test_decision_notifies_user(self):
        result = self.sign_up()
        self.onboarding.approve_application(result.application.id, "admin-1")
        titles = [a.title for a in self.system.notifications.get_alerts(result.profile.id)]
        assert "Account Application Approved" in titles


class TestAuthentication:

    def setup_method(self):
        self.system = build_system(verification_bypass_emails=["demo@example.com"])
        self.onboarding = self.system.onboarding

    def test_pin_checked_first(self):
        result = self.onboarding.sign_up("pin@example.com", "Pin User", pin="4321")
        self.onboarding.verify_secret_key(result.profile.id, result.application.qr_code_secret)
        self.onboarding.approve_application(result.application.id, "admin-1")

        assert self.onboarding.authenticate(result.profile.id, "0000").reason is BlockReason.INCORRECT_PIN
        assert self.onboarding.authenticate(result.profile.id, "4321").may_transact

    def test_invalid_pin_format(self):
        result = self.onboarding.sign_up("pin@example.com", "Pin User")
        with pytest.raises(ValidationError):
            self.onboarding.set_pin(result.profile.id, "12ab")

    def test_bypass_allows_sign_in_but_not_transacting(self):
        result = self.onboarding.sign_up("demo@example.com", "Demo User")

        decision = self.onboarding.authenticate(result.profile.id)

        assert decision.may_authenticate
        assert decision.bypassed
        assert not decision.may_transact
        # The pure gate is unaffected
        assert not self.onboarding.status(result.profile.id).may_authenticate

    def test_bypass_ignored_in_production(self):
        system = build_system(environment="production", verification_bypass_emails=["demo@example.com"])
        result = system.onboarding.sign_up("demo@example.com", "Demo User")
        assert not system.onboarding.authenticate(result.profile.id).may_authenticate
