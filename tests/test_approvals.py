"""
Tests for admin decisions on pending transactions and applications
"""

import os
import tempfile
import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from vault_core.audit import AuditEventType
from vault_core.errors import InsufficientFundsError, StateConflictError, TransactionNotFoundError
from vault_core.profiles import ApplicationStatus
from vault_core.storage import InMemoryStorage, SQLiteStorage
from vault_core.transactions import TransactionStatus

from support import build_system, onboard_customer


class TestTransactionApproval:

    def setup_method(self):
        self.system = build_system()
        self.approvals = self.system.approvals
        self.poster = self.system.poster
        self.profile, self.account = onboard_customer(self.system, "approve@example.com")

    def balance(self):
        return self.system.accounts.require_account(self.account.id).balance

    def test_approve_applies_effect_once(self):
        txn = self.poster.post(self.account.id, "300.00", "credit", immediate=False, description="Wire transfer")

        approved = self.approvals.approve(txn.id, "admin-1")
        assert approved.status is TransactionStatus.COMPLETED
        assert approved.decided_by == "admin-1"
        assert self.balance() == Decimal("300.00")

        with pytest.raises(StateConflictError):
            self.approvals.approve(txn.id, "admin-2")
        assert self.balance() == Decimal("300.00")

    def test_approve_is_audited_and_notified(self):
        txn = self.poster.post(self.account.id, "10.00", "credit", immediate=False, description="Check deposit")
        self.approvals.approve(txn.id, "admin-1")

        events = self.system.audit_trail.get_events_for_entity("transaction", txn.id)
        approvals = [e for e in events if e.action_type == "approve_transaction"]
        assert len(approvals) == 1
        assert approvals[0].actor_id == "admin-1"

        titles = [a.title for a in self.system.notifications.get_alerts(self.profile.id)]
        assert "Transaction Approved" in titles
        # Only the approval alert, not a second "Deposit Received"
        assert "Deposit Received" not in titles

    def test_reject_then_approve_fails(self):
        txn = self.poster.post(self.account.id, "10.00", "credit", immediate=False)
        rejected = self.approvals.reject(txn.id, "admin-1", "Duplicate")

        assert rejected.status is TransactionStatus.FAILED
        with pytest.raises(StateConflictError):
            self.approvals.approve(txn.id, "admin-1")
        assert self.balance() == Decimal("0.00")

    def test_approving_an_overdrawing_debit_marks_it_failed(self):
        txn = self.poster.post(self.account.id, "50.00", "debit", immediate=False)
        with pytest.raises(InsufficientFundsError):
            self.approvals.approve(txn.id, "admin-1")
        assert self.poster.require_transaction(txn.id).status is TransactionStatus.FAILED

    def test_bulk_approve_reports_each_item(self):
        good = self.poster.post(self.account.id, "25.00", "credit", immediate=False)
        already = self.poster.post(self.account.id, "5.00", "credit", immediate=False)
        self.approvals.approve(already.id, "admin-1")

        outcomes = self.approvals.bulk_approve([good.id, already.id, "missing-id"], "admin-2")

        assert [o.success for o in outcomes] == [True, False, False]
        assert outcomes[0].status == "completed"
        assert outcomes[1].error_type == "state_conflict"
        assert outcomes[2].error_type == "transaction_not_found"
        assert self.balance() == Decimal("30.00")

    def test_bulk_reject(self):
        first = self.poster.post(self.account.id, "25.00", "credit", immediate=False)
        second = self.poster.post(self.account.id, "35.00", "credit", immediate=False)

        outcomes = self.approvals.bulk_reject([first.id, second.id], "admin-1", "Batch rejected")

        assert all(o.success for o in outcomes)
        assert self.approvals.list_pending_transactions() == []

    def test_unknown_transaction(self):
        with pytest.raises(TransactionNotFoundError):
            self.approvals.approve("nope", "admin-1")


class TestApplicationApproval:

    def setup_method(self):
        self.system = build_system()
        self.approvals = self.system.approvals

    def test_pending_applications_listed_until_decided(self):
        first = self.system.onboarding.sign_up("a@example.com", "A Person")
        second = self.system.onboarding.sign_up("b@example.com", "B Person")

        pending = self.approvals.list_pending_applications()
        assert {a.id for a in pending} == {first.application.id, second.application.id}

        self.approvals.approve_application(first.application.id, "admin-1")
        self.approvals.reject_application(second.application.id, "admin-1", "Failed checks")

        assert self.approvals.list_pending_applications() == []
        decided = self.system.profiles.require_application(second.application.id)
        assert decided.status is ApplicationStatus.REJECTED
        assert decided.rejection_reason == "Failed checks"


class ApprovalSweepRaceContract:
    """An admin approval and the auto-complete sweep settle the same row at once"""

    rounds = 5

    def make_storage(self):
        raise NotImplementedError

    def setup_method(self):
        self.system = build_system(storage=self.make_storage(), auto_complete_delay_minutes=30)
        self.profile, self.account = onboard_customer(self.system, "sweep-race@example.com")

    def balance(self):
        return self.system.accounts.require_account(self.account.id).balance

    def race_once(self):
        txn = self.system.poster.post(self.account.id, "10.00", "credit", immediate=False)
        barrier = threading.Barrier(2)
        outcome = {}

        def approve():
            barrier.wait()
            try:
                self.system.approvals.approve(txn.id, "admin-1")
                outcome["approved"] = 1
            except StateConflictError:
                outcome["approved"] = 0

        def sweep():
            barrier.wait()
            outcome["sweep"] = self.system.poster.complete_due_transactions(
                now=datetime.now(timezone.utc) + timedelta(minutes=31)
            )

        threads = [threading.Thread(target=approve), threading.Thread(target=sweep)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return txn, outcome

    def test_exactly_one_settles(self):
        for round_number in range(1, self.rounds + 1):
            txn, outcome = self.race_once()

            assert outcome["approved"] + outcome["sweep"]["completed"] == 1
            assert outcome["sweep"]["failed"] == 0
            assert self.system.poster.require_transaction(txn.id).status is TransactionStatus.COMPLETED
            assert self.balance() == Decimal("10.00") * round_number

            events = self.system.audit_trail.get_events_for_entity("transaction", txn.id)
            posted = [e for e in events if e.event_type is AuditEventType.TRANSACTION_POSTED]
            approved = [e for e in events if e.event_type is AuditEventType.TRANSACTION_APPROVED]
            assert len(posted) == 1
            assert len(approved) == outcome["approved"]


class TestApprovalSweepRaceInMemory(ApprovalSweepRaceContract):

    def make_storage(self):
        return InMemoryStorage()


class TestApprovalSweepRaceSQLite(ApprovalSweepRaceContract):

    def make_storage(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        return SQLiteStorage(os.path.join(self.temp_dir.name, "vault_sweep.db"))

    def teardown_method(self):
        self.system.close()
        self.temp_dir.cleanup()
