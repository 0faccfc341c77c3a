"""
Tests for joint account activation

The deposit is frozen at submission time, and activation needs both the
admin approval and a qualifying deposit, in either order.
"""

import re
import pytest
from decimal import Decimal

from vault_core.errors import StateConflictError, ValidationError
from vault_core.joint_accounts import JointStage, JointStatus, PartnerDetails
from vault_core.profiles import AccountType
from vault_core.transactions import TransactionSource

from support import build_system, onboard_customer


PARTNER = PartnerDetails(
    full_name="Sam Partner",
    email="sam.partner@example.com",
    phone="+1 555 0100",
    ssn="123-45-6789",
    address="1 Main St, Springfield"
)


class TestJointAccountActivation:

    def setup_method(self):
        self.system = build_system()
        self.joint = self.system.joint_accounts
        self.poster = self.system.poster
        self.profile, self.account = onboard_customer(self.system, "primary@example.com", "Pat Primary")
        self.poster.post(self.account.id, "5000.00", "credit")

    def submitted_request(self):
        request = self.joint.start_request(self.account.id, self.profile.id)
        self.joint.submit_partner_details(request.id, PARTNER, id_document=("passport.png", b"\x89PNG data"))
        return self.joint.submit(request.id, terms_accepted=True)

    def partner_deposit(self, amount="50.00", **kwargs):
        kwargs.setdefault("source", TransactionSource.EXTERNAL)
        return self.poster.post(self.account.id, amount, "credit", description="Joint account deposit", **kwargs)

    def latest_otp(self):
        body = self.system.email_dispatcher.messages_to("primary@example.com")[-1]["body"]
        return re.search(r"\b(\d{6})\b", body).group(1)

    def test_request_walks_through_stages(self):
        request = self.joint.start_request(self.account.id, self.profile.id)
        assert request.stage is JointStage.FORM

        request = self.joint.submit_partner_details(request.id, PARTNER)
        assert request.stage is JointStage.REVIEW
        assert request.partner_email == "sam.partner@example.com"

        request = self.joint.submit(request.id, terms_accepted=True)
        assert request.stage is JointStage.PENDING
        assert request.status is JointStatus.PENDING
        assert request.terms_accepted

    def test_deposit_frozen_at_submission(self):
        request = self.submitted_request()
        assert request.deposit_amount == Decimal("50.00")

        # Balance grows afterwards; the requirement does not
        self.poster.post(self.account.id, "4000.00", "credit")
        assert self.joint.require_request(request.id).deposit_amount == Decimal("50.00")
        assert self.joint.deposit_preview(request.id) == Decimal("50.00")

    def test_preview_tracks_balance_before_submission(self):
        request = self.joint.start_request(self.account.id, self.profile.id)
        assert self.joint.deposit_preview(request.id) == Decimal("50.00")
        self.poster.post(self.account.id, "1000.00", "credit")
        assert self.joint.deposit_preview(request.id) == Decimal("60.00")

    def test_approval_alone_does_not_activate(self):
        request = self.submitted_request()
        request = self.joint.approve(request.id, "admin-1")

        assert request.status is JointStatus.APPROVED
        assert request.stage is JointStage.PENDING
        assert not self.system.accounts.require_account(self.account.id).is_joint

    def test_deposit_alone_does_not_activate(self):
        request = self.submitted_request()
        request = self.joint.record_deposit(request.id, self.partner_deposit().id)

        assert request.deposit_recorded
        assert request.stage is JointStage.PENDING
        assert not self.system.accounts.require_account(self.account.id).is_joint

    def test_approval_then_deposit_activates(self):
        request = self.submitted_request()
        self.joint.approve(request.id, "admin-1")
        request = self.joint.record_deposit(request.id, self.partner_deposit().id)

        assert request.stage is JointStage.ACTIVATED
        account = self.system.accounts.require_account(self.account.id)
        assert account.joint_partner_email == "sam.partner@example.com"
        assert account.joint_transfer_restricted

    def test_deposit_then_approval_activates(self):
        request = self.submitted_request()
        self.joint.record_deposit(request.id, self.partner_deposit("75.00").id)
        request = self.joint.approve(request.id, "admin-1")

        assert request.stage is JointStage.ACTIVATED
        assert request.activated_at is not None
        events = self.system.audit_trail.get_events_for_entity("joint_request", request.id)
        assert [e.action_type for e in events].count("joint_account_activated") == 1

    def test_joint_account_blocks_transfers_between_holders(self):
        request = self.submitted_request()
        self.joint.approve(request.id, "admin-1")
        self.joint.record_deposit(request.id, self.partner_deposit().id)

        account = self.system.accounts.require_account(self.account.id)
        assert account.blocks_transfer_to("Sam.Partner@example.com", "primary@example.com")
        assert account.blocks_transfer_to("primary@example.com", "primary@example.com")
        assert not account.blocks_transfer_to("someone@example.com", "primary@example.com")

    def test_deposit_made_before_submission_rejected(self):
        early = self.partner_deposit()
        request = self.submitted_request()
        assert request.submitted_at is not None

        with pytest.raises(ValidationError):
            self.joint.record_deposit(request.id, early.id)

        request = self.joint.approve(request.id, "admin-1")
        assert not request.deposit_recorded
        assert request.stage is JointStage.PENDING
        assert not self.system.accounts.require_account(self.account.id).is_joint

        request = self.joint.record_deposit(request.id, self.partner_deposit().id)
        assert request.stage is JointStage.ACTIVATED

    def test_deposit_below_requirement_rejected(self):
        request = self.submitted_request()
        with pytest.raises(ValidationError):
            self.joint.record_deposit(request.id, self.partner_deposit("49.99").id)

    def test_internal_deposit_rejected(self):
        request = self.submitted_request()
        internal = self.partner_deposit(source=TransactionSource.INTERNAL)
        with pytest.raises(ValidationError):
            self.joint.record_deposit(request.id, internal.id)

    def test_pending_deposit_rejected(self):
        request = self.submitted_request()
        pending = self.partner_deposit(immediate=False)
        with pytest.raises(StateConflictError):
            self.joint.record_deposit(request.id, pending.id)

    def test_deposit_can_not_be_linked_twice(self):
        request = self.submitted_request()
        deposit = self.partner_deposit()
        self.joint.record_deposit(request.id, deposit.id)
        # Same link again is a no-op
        assert self.joint.record_deposit(request.id, deposit.id).deposit_transaction_id == deposit.id
        with pytest.raises(StateConflictError):
            self.joint.record_deposit(request.id, self.partner_deposit().id)

    def test_otp_sent_and_verified(self):
        request = self.submitted_request()

        with pytest.raises(ValidationError):
            self.joint.verify_otp(request.id, "000000" if self.latest_otp() != "000000" else "111111")

        request = self.joint.verify_otp(request.id, self.latest_otp())
        assert request.otp_verified

    def test_rejected_request_can_not_be_approved(self):
        request = self.submitted_request()
        request = self.joint.reject(request.id, "admin-1", "Identity not confirmed")

        assert request.stage is JointStage.REJECTED
        assert request.rejection_reason == "Identity not confirmed"
        with pytest.raises(StateConflictError):
            self.joint.approve(request.id, "admin-1")

    def test_only_ssn_last_four_kept(self):
        request = self.submitted_request()
        stored = self.system.storage.load("joint_account_requests", request.id)

        assert request.partner_ssn_last4 == "6789"
        assert "123-45-6789" not in str(stored)
        assert "123456789" not in str(stored)

    def test_documents_uploaded(self):
        request = self.submitted_request()
        assert self.system.documents.fetch_document(request.partner_id_document_url) == b"\x89PNG data"

    def test_partner_must_differ_from_holder(self):
        request = self.joint.start_request(self.account.id, self.profile.id)
        same_person = PartnerDetails("Pat Primary", "Primary@example.com", "555", "123456789", "Home")
        with pytest.raises(ValidationError):
            self.joint.submit_partner_details(request.id, same_person)

    def test_partner_details_validated(self):
        request = self.joint.start_request(self.account.id, self.profile.id)
        bad_ssn = PartnerDetails("Sam", "sam@example.com", "555", "12-34", "Home")
        with pytest.raises(ValidationError):
            self.joint.submit_partner_details(request.id, bad_ssn)

    def test_terms_required(self):
        request = self.joint.start_request(self.account.id, self.profile.id)
        self.joint.submit_partner_details(request.id, PARTNER)
        with pytest.raises(ValidationError):
            self.joint.submit(request.id, terms_accepted=False)

    def test_one_open_request_per_account(self):
        self.joint.start_request(self.account.id, self.profile.id)
        with pytest.raises(StateConflictError):
            self.joint.start_request(self.account.id, self.profile.id)

    def test_liability_accounts_not_eligible(self):
        card = self.system.accounts.open_account(self.profile.id, AccountType.CREDIT_CARD)
        with pytest.raises(StateConflictError):
            self.joint.start_request(card.id, self.profile.id)

    def test_both_parties_notified(self):
        request = self.submitted_request()
        self.joint.approve(request.id, "admin-1")

        partner_alerts = self.system.notifications.get_alerts("sam.partner@example.com")
        holder_alerts = [a for a in self.system.notifications.get_alerts(self.profile.id)
                         if a.title == "Joint Account Update"]
        assert partner_alerts and holder_alerts
        assert any("$50.00" in a.message for a in partner_alerts)
