"""
Test suite for admin adjustments, reversals and account controls
"""

import threading

import pytest
from decimal import Decimal

from funds_core.accounts import AccountStatus, AccountType
from funds_core.audit import AuditEventType
from funds_core.config import FundsCoreConfig
from funds_core.errors import (
    AccountNotFound, AlreadyReversed, InsufficientFunds, InvalidAmount,
    InvalidState, NotAdmin, TransactionNotFound, ValidationError
)
from funds_core.ledger import TransactionStatus, TransactionType
from funds_core.roles import AppRole
from funds_core.system import BankingSystem


class TestAdminService:
    """Test privileged operations"""

    def setup_method(self):
        self.system = BankingSystem(config=FundsCoreConfig(database_url="memory://"))
        self.admin = self.system.admin
        self.system.roles.grant_role("admin-1", AppRole.ADMIN)

        self.alice = self.system.accounts.create_account("alice")
        self.bob = self.system.accounts.create_account("bob")

    def _balance(self, account):
        return self.system.accounts.get_balance(account.id)

    def test_non_admin_is_refused(self):
        with pytest.raises(NotAdmin) as exc_info:
            self.admin.adjust_balance("alice", self.alice.id, "10.00", "deposit")

        assert str(exc_info.value) == "Not authorized"
        assert self._balance(self.alice) == Decimal("0.00")
        denied = self.system.audit_trail.get_events_by_type(AuditEventType.ADMIN_ACCESS_DENIED)
        assert denied[-1].user_id == "alice"

        for call in (
            lambda: self.admin.toggle_account_status("alice", self.bob.id, "frozen"),
            lambda: self.admin.approve_kyc("alice", "carol"),
            lambda: self.admin.list_transactions("alice"),
            lambda: self.admin.list_accounts("alice"),
            lambda: self.admin.reverse_transaction("alice", "anything"),
        ):
            with pytest.raises(NotAdmin):
                call()

    def test_revoked_admin_is_refused(self):
        self.system.roles.revoke_role("admin-1", AppRole.ADMIN)
        with pytest.raises(NotAdmin):
            self.admin.list_accounts("admin-1")

    def test_revoked_admin_can_be_granted_again(self):
        self.system.roles.revoke_role("admin-1", AppRole.ADMIN)
        self.system.roles.grant_role("admin-1", AppRole.ADMIN, granted_by="root")

        assert self.system.roles.has_role("admin-1", AppRole.ADMIN)
        assert self.admin.list_accounts("admin-1")
        grants = self.system.audit_trail.get_events_by_type(AuditEventType.ROLE_GRANTED)
        assert grants[-1].user_id == "root"

        # Granting an active role again changes nothing
        self.system.roles.grant_role("admin-1", AppRole.ADMIN)
        assert len(self.system.audit_trail.get_events_by_type(AuditEventType.ROLE_GRANTED)) == len(grants)

    def test_deposit_adjustment(self):
        entry = self.admin.adjust_balance("admin-1", self.alice.id, "1000.00", TransactionType.DEPOSIT)

        assert self._balance(self.alice) == Decimal("1000.00")
        assert entry.transaction_type == TransactionType.DEPOSIT
        assert entry.status == TransactionStatus.COMPLETED
        assert entry.sender_account_id is None
        assert entry.receiver_account_id == self.alice.id
        assert entry.initiated_by == "admin-1"
        assert entry.reference_code.startswith("DEP-")

        adjusted = self.system.audit_trail.get_events_by_type(AuditEventType.BALANCE_ADJUSTED)
        assert adjusted[-1].metadata["new_balance"] == "1000.00"

    def test_withdrawal_adjustment(self):
        self.admin.adjust_balance("admin-1", self.alice.id, "100.00", "deposit")
        entry = self.admin.adjust_balance("admin-1", self.alice.id, "40.00", "withdrawal", "wire out")

        assert self._balance(self.alice) == Decimal("60.00")
        assert entry.sender_account_id == self.alice.id
        assert entry.receiver_account_id is None
        assert entry.narration == "wire out"

    def test_withdrawal_ignores_freeze_but_not_balance(self):
        self.admin.adjust_balance("admin-1", self.alice.id, "100.00", "deposit")
        self.admin.toggle_account_status("admin-1", self.alice.id, AccountStatus.FROZEN)

        self.admin.adjust_balance("admin-1", self.alice.id, "30.00", "withdrawal")
        assert self._balance(self.alice) == Decimal("70.00")

        with pytest.raises(InsufficientFunds):
            self.admin.adjust_balance("admin-1", self.alice.id, "70.01", "withdrawal")
        assert self._balance(self.alice) == Decimal("70.00")

    def test_invalid_adjustments(self):
        with pytest.raises(ValidationError):
            self.admin.adjust_balance("admin-1", self.alice.id, "10.00", "transfer")
        with pytest.raises(ValidationError):
            self.admin.adjust_balance("admin-1", self.alice.id, "10.00", "bonus")
        with pytest.raises(InvalidAmount):
            self.admin.adjust_balance("admin-1", self.alice.id, "0.00", "deposit")
        with pytest.raises(AccountNotFound):
            self.admin.adjust_balance("admin-1", "missing", "10.00", "deposit")

        assert self.system.ledger.list_recent() == []

    def test_reverse_transfer(self):
        self.admin.adjust_balance("admin-1", self.alice.id, "100.00", "deposit")
        transfer = self.system.transfers.execute(self.alice.id, self.bob.id, "40.00")

        reversal = self.admin.reverse_transaction("admin-1", transfer.id, reason="customer dispute")

        assert self._balance(self.alice) == Decimal("100.00")
        assert self._balance(self.bob) == Decimal("0.00")
        assert reversal.transaction_type == TransactionType.REVERSAL
        assert reversal.sender_account_id == self.bob.id
        assert reversal.receiver_account_id == self.alice.id
        assert "customer dispute" in reversal.narration

        original = self.system.ledger.get(transfer.id)
        assert original.status == TransactionStatus.REVERSED
        assert original.reversed_by == reversal.id

        with pytest.raises(AlreadyReversed):
            self.admin.reverse_transaction("admin-1", transfer.id)
        assert self._balance(self.alice) == Decimal("100.00")

    def test_concurrent_reversals_apply_once(self):
        self.admin.adjust_balance("admin-1", self.alice.id, "100.00", "deposit")
        transfer = self.system.transfers.execute(self.alice.id, self.bob.id, "40.00")

        barrier = threading.Barrier(4)
        results = []
        results_lock = threading.Lock()

        def reverse():
            barrier.wait()
            try:
                self.admin.reverse_transaction("admin-1", transfer.id)
                outcome = "reversed"
            except AlreadyReversed:
                outcome = "already_reversed"
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=reverse) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ["already_reversed"] * 3 + ["reversed"]
        assert self._balance(self.alice) == Decimal("100.00")
        assert self._balance(self.bob) == Decimal("0.00")
        reversals = self.system.ledger.list_by_status(TransactionStatus.COMPLETED)
        assert len([e for e in reversals if e.transaction_type == TransactionType.REVERSAL]) == 1

    def test_reversal_after_receiver_spent_changes_nothing(self):
        carol = self.system.accounts.create_account("carol")
        self.admin.adjust_balance("admin-1", self.alice.id, "50.00", "deposit")
        transfer = self.system.transfers.execute(self.alice.id, self.bob.id, "50.00")
        self.system.transfers.execute(self.bob.id, carol.id, "30.00")

        with pytest.raises(InsufficientFunds):
            self.admin.reverse_transaction("admin-1", transfer.id)

        assert self._balance(self.alice) == Decimal("0.00")
        assert self._balance(self.bob) == Decimal("20.00")
        assert self.system.ledger.get(transfer.id).status == TransactionStatus.COMPLETED
        assert not [e for e in self.system.ledger.list_recent()
                    if e.transaction_type == TransactionType.REVERSAL]

    def test_reverse_deposit(self):
        deposit = self.admin.adjust_balance("admin-1", self.alice.id, "75.00", "deposit")
        reversal = self.admin.reverse_transaction("admin-1", deposit.id)

        assert self._balance(self.alice) == Decimal("0.00")
        assert reversal.sender_account_id == self.alice.id
        assert reversal.receiver_account_id is None

    def test_reversal_of_reversal_is_refused(self):
        deposit = self.admin.adjust_balance("admin-1", self.alice.id, "75.00", "deposit")
        reversal = self.admin.reverse_transaction("admin-1", deposit.id)

        with pytest.raises(InvalidState):
            self.admin.reverse_transaction("admin-1", reversal.id)

    def test_reverse_unknown_transaction(self):
        with pytest.raises(TransactionNotFound):
            self.admin.reverse_transaction("admin-1", "missing")

    def test_toggle_account_status(self):
        account = self.admin.toggle_account_status("admin-1", self.alice.id, "frozen")
        assert account.status == AccountStatus.FROZEN
        assert self.system.accounts.get_account(self.alice.id).status == AccountStatus.FROZEN

        with pytest.raises(ValidationError):
            self.admin.toggle_account_status("admin-1", self.alice.id, "closed")

    def test_approve_kyc_opens_account(self):
        account = self.admin.approve_kyc("admin-1", "carol", "current")

        assert account.user_id == "carol"
        assert account.account_type == AccountType.CURRENT
        approvals = self.system.audit_trail.get_events_by_type(AuditEventType.KYC_APPROVED)
        assert approvals[-1].entity_id == "carol"
        assert approvals[-1].user_id == "admin-1"

    def test_listings(self):
        self.admin.adjust_balance("admin-1", self.alice.id, "10.00", "deposit")
        self.admin.adjust_balance("admin-1", self.bob.id, "20.00", "deposit")

        assert len(self.admin.list_accounts("admin-1")) == 2
        recent = self.admin.list_transactions("admin-1", limit=1)
        assert len(recent) == 1
        assert recent[0].receiver_account_id == self.bob.id
