"""
Admin Adjustment & Reversal Module

Privileged operations: manual deposits and withdrawals, reversals, freezing
accounts and opening accounts for KYC-approved users. Every operation checks
the admin role first. Adjustments and reversals go through the same account
and ledger primitives as customer transfers.

External wires are recorded as a withdrawal adjustment.
"""

from typing import List, Optional, Union

from .accounts import AccountStore, Account, AccountStatus, AccountType
from .audit import AuditTrail, AuditEventType
from .errors import ValidationError, InvalidAmount, BankingError
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .ledger import Ledger, LedgerEntry, TransactionType
from .logging_config import get_logger, log_action
from .money import AmountLike, ZERO, to_amount
from .roles import RoleDirectory
from .storage import StorageInterface


class AdminService(EventPublisherMixin):
    """
    Admin-only balance adjustments, reversals and account controls
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        ledger: Ledger,
        roles: RoleDirectory,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.roles = roles
        self.audit = audit_trail
        self.logger = get_logger("funds_core.admin")
        self.set_event_dispatcher(event_dispatcher)

    def adjust_balance(
        self,
        admin_id: str,
        account_id: str,
        amount: AmountLike,
        transaction_type: Union[TransactionType, str],
        narration: str = ""
    ) -> LedgerEntry:
        """
        Credit (deposit) or force-debit (withdrawal) an account

        Withdrawals ignore frozen status but never take a balance below zero.

        Raises:
            NotAdmin, ValidationError, InvalidAmount, AccountNotFound,
            InsufficientFunds
        """
        self.roles.require_admin(admin_id)

        try:
            transaction_type = TransactionType(transaction_type)
        except ValueError:
            raise ValidationError(f"Unsupported adjustment type: {transaction_type}")
        if transaction_type not in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValidationError("Adjustments must be deposit or withdrawal")

        amount = to_amount(amount)
        if amount <= ZERO:
            raise InvalidAmount("Amount must be greater than zero")

        with self.storage.lock_records([(self.accounts.accounts_table, account_id)]):
            with self.storage.atomic():
                if transaction_type == TransactionType.DEPOSIT:
                    account = self.accounts.credit(account_id, amount)
                    entry = self.ledger.append(
                        transaction_type=transaction_type,
                        amount=amount,
                        receiver_account_id=account_id,
                        narration=narration or "Admin deposit",
                        initiated_by=admin_id
                    )
                else:
                    account = self.accounts.debit(account_id, amount, force=True)
                    entry = self.ledger.append(
                        transaction_type=transaction_type,
                        amount=amount,
                        sender_account_id=account_id,
                        narration=narration or "Admin withdrawal",
                        initiated_by=admin_id
                    )

        self.audit.log_event(
            AuditEventType.BALANCE_ADJUSTED, "account", account_id,
            {
                "transaction_id": entry.id,
                "reference_code": entry.reference_code,
                "transaction_type": transaction_type.value,
                "amount": amount,
                "new_balance": account.balance
            },
            admin_id
        )
        log_action(self.logger, "info", f"Balance adjusted ({transaction_type.value})",
                   user_id=admin_id, action="balance_adjusted", resource=account_id,
                   extra={"reference_code": entry.reference_code, "amount": str(amount)})
        self.publish_event(DomainEvent.BALANCE_ADJUSTED, "transaction", entry.id, {
            "account_id": account_id,
            "transaction_type": transaction_type.value,
            "amount": str(amount)
        })

        return entry

    def reverse_transaction(self, admin_id: str, transaction_id: str, reason: Optional[str] = None) -> LedgerEntry:
        """
        Undo a completed transfer, deposit or withdrawal

        The original is marked reversed and a new reversal entry with
        sender/receiver swapped is appended. The money moves back with
        forced debits; if that would make a balance negative nothing changes.

        Returns:
            The reversal entry

        Raises:
            NotAdmin, TransactionNotFound, AlreadyReversed, InvalidState,
            InsufficientFunds
        """
        self.roles.require_admin(admin_id)

        original = self.ledger.require(transaction_id)
        keys = [(self.ledger.table_name, original.id)]
        for account_id in (original.sender_account_id, original.receiver_account_id):
            if account_id:
                keys.append((self.accounts.accounts_table, account_id))

        narration = f"Reversal of {original.reference_code}"
        if reason:
            narration = f"{narration}: {reason}"

        try:
            with self.storage.lock_records(keys):
                with self.storage.atomic():
                    reversal = self.ledger.mark_reversed(original.id, narration, initiated_by=admin_id)
                    if original.receiver_account_id:
                        self.accounts.debit(original.receiver_account_id, original.amount, force=True)
                    if original.sender_account_id:
                        self.accounts.credit(original.sender_account_id, original.amount)
        except BankingError as e:
            log_action(self.logger, "warning", f"Reversal rejected: {e.message}",
                       user_id=admin_id, action="reversal_failed", resource=transaction_id,
                       extra={"reason": e.code})
            raise

        self.audit.log_event(
            AuditEventType.TRANSACTION_REVERSED, "transaction", original.id,
            {
                "reversal_transaction_id": reversal.id,
                "reference_code": original.reference_code,
                "reversal_reference_code": reversal.reference_code,
                "amount": original.amount,
                "reason": reason
            },
            admin_id
        )
        log_action(self.logger, "info", "Transaction reversed", user_id=admin_id,
                   action="transaction_reversed", resource=original.id,
                   extra={"reversal_reference_code": reversal.reference_code})
        self.publish_event(DomainEvent.TRANSACTION_REVERSED, "transaction", original.id, {
            "reversal_transaction_id": reversal.id,
            "amount": str(original.amount)
        })

        return reversal

    def toggle_account_status(self, admin_id: str, account_id: str,
                              status: Union[AccountStatus, str]) -> Account:
        """
        Freeze or unfreeze an account

        Raises:
            NotAdmin, ValidationError, AccountNotFound
        """
        self.roles.require_admin(admin_id)
        try:
            status = AccountStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown account status: {status}")

        account = self.accounts.set_status(account_id, status, user_id=admin_id)
        log_action(self.logger, "info", f"Account status set to {status.value}",
                   user_id=admin_id, action="account_status_changed", resource=account_id)
        return account

    def approve_kyc(self, admin_id: str, user_id: str,
                    account_type: Union[AccountType, str] = AccountType.SAVINGS) -> Account:
        """Open the first account for a user whose KYC was approved elsewhere"""
        self.roles.require_admin(admin_id)
        try:
            account_type = AccountType(account_type)
        except ValueError:
            raise ValidationError(f"Unknown account type: {account_type}")

        account = self.accounts.create_account(user_id, account_type)
        self.audit.log_event(
            AuditEventType.KYC_APPROVED, "user", user_id,
            {"account_id": account.id, "account_number": account.account_number},
            admin_id
        )
        return account

    def list_transactions(self, admin_id: str, limit: int = 50) -> List[LedgerEntry]:
        self.roles.require_admin(admin_id)
        return self.ledger.list_recent(limit)

    def list_accounts(self, admin_id: str) -> List[Account]:
        self.roles.require_admin(admin_id)
        return self.accounts.list_accounts()
