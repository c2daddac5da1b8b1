"""
Account Management Module

Account records and balances. Balances only move through debit() and
credit(), and only inside a storage unit of work that also writes the
matching ledger entry.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import secrets
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import AccountNotFound, AccountFrozen, InsufficientFunds, InvalidState, ConcurrencyError
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount, parse_stored
from .storage import StorageInterface, StorageRecord, DuplicateRecord


class AccountType(Enum):
    """Retail account products"""
    SAVINGS = "savings"
    CURRENT = "current"
    CHECKING = "checking"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    FROZEN = "frozen"


ACCOUNT_NUMBER_PREFIX = "EB"
ACCOUNT_NUMBER_DIGITS = 10
_MAX_NUMBER_ATTEMPTS = 10


@dataclass
class Account(StorageRecord):
    """Customer account with a non-negative balance"""
    user_id: str
    account_number: str
    account_type: AccountType
    balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE

    def can_debit(self) -> bool:
        """Frozen accounts refuse ordinary debits"""
        return self.status == AccountStatus.ACTIVE


class AccountStore(EventPublisherMixin):
    """
    Manages account lifecycle and balance mutation
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts_table = "accounts"
        self.numbers_table = "account_numbers"
        self.logger = get_logger("funds_core.accounts")
        self.set_event_dispatcher(event_dispatcher)

    def create_account(self, user_id: str, account_type: AccountType = AccountType.SAVINGS) -> Account:
        """
        Open a new account with a zero balance

        Args:
            user_id: Owner of the account
            account_type: Product type

        Returns:
            Created Account object
        """
        if isinstance(account_type, str):
            account_type = AccountType(account_type)

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_number="",
            account_type=account_type
        )

        with self.storage.atomic():
            account.account_number = self._reserve_account_number(account.id)
            self._save_account(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "account_number": account.account_number,
                "account_type": account_type.value
            },
            user_id=user_id
        )
        log_action(self.logger, "info", "Account opened", user_id=user_id,
                   action="account_created", resource=account.id)
        self.publish_event(DomainEvent.ACCOUNT_CREATED, "account", account.id, {
            "user_id": user_id,
            "account_number": account.account_number,
            "account_type": account_type.value
        })

        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise AccountNotFound"""
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def require_owned(self, account_id: str, user_id: str) -> Account:
        """Get an account the user owns; other users' accounts look absent"""
        account = self.get_account(account_id)
        if account is None or account.user_id != user_id:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def list_user_accounts(self, user_id: str, status: Optional[AccountStatus] = None) -> List[Account]:
        """Get all accounts owned by a user, optionally filtered by status"""
        filters = {"user_id": user_id}
        if status is not None:
            filters["status"] = status.value
        return [self._account_from_dict(data) for data in self.storage.find(self.accounts_table, filters)]

    def list_accounts(self) -> List[Account]:
        """Get every account"""
        return [self._account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def get_balance(self, account_id: str) -> Decimal:
        """Current balance of an account"""
        return self.require_account(account_id).balance

    def set_status(self, account_id: str, status: AccountStatus, user_id: Optional[str] = None) -> Account:
        """
        Freeze or unfreeze an account. No ledger entry is written.

        Raises:
            AccountNotFound: If the account does not exist
        """
        if isinstance(status, str):
            status = AccountStatus(status)

        with self.storage.lock_records([(self.accounts_table, account_id)]):
            with self.storage.atomic():
                account = self.require_account(account_id)
                old_status = account.status
                account.status = status
                account.updated_at = datetime.now(timezone.utc)
                self._save_account(account)

        if status == AccountStatus.FROZEN:
            event_type = AuditEventType.ACCOUNT_FROZEN
        else:
            event_type = AuditEventType.ACCOUNT_UNFROZEN

        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="account",
            entity_id=account.id,
            metadata={"old_status": old_status.value, "new_status": status.value},
            user_id=user_id
        )
        self.publish_event(DomainEvent.ACCOUNT_STATUS_CHANGED, "account", account.id, {
            "old_status": old_status.value,
            "new_status": status.value
        })

        return account

    def debit(self, account_id: str, amount: Decimal, force: bool = False) -> Account:
        """
        Take money out of an account inside the caller's unit of work

        Args:
            account_id: Account to debit
            amount: Positive amount
            force: Admin override that ignores frozen status (never the balance floor)

        Raises:
            InvalidState: If called outside a unit of work
            AccountNotFound, AccountFrozen, InsufficientFunds
        """
        self._require_unit_of_work()
        amount = to_amount(amount)
        account = self.require_account(account_id)

        if not force and not account.can_debit():
            raise AccountFrozen(f"Account {account.account_number} is frozen")

        if account.balance < amount:
            raise InsufficientFunds(
                f"Insufficient funds in {account.account_number}: "
                f"balance {account.balance}, requested {amount}"
            )

        account.balance = account.balance - amount
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def credit(self, account_id: str, amount: Decimal) -> Account:
        """
        Put money into an account inside the caller's unit of work

        Raises:
            InvalidState: If called outside a unit of work
            AccountNotFound
        """
        self._require_unit_of_work()
        amount = to_amount(amount)
        account = self.require_account(account_id)

        account.balance = account.balance + amount
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def _require_unit_of_work(self) -> None:
        if not self.storage.in_transaction():
            raise InvalidState("Balance changes must run inside a storage unit of work")

    def _reserve_account_number(self, account_id: str) -> str:
        """Claim a fresh EB + 10 digit number; numbers are never reused"""
        for _ in range(_MAX_NUMBER_ATTEMPTS):
            digits = "".join(secrets.choice("0123456789") for _ in range(ACCOUNT_NUMBER_DIGITS))
            number = f"{ACCOUNT_NUMBER_PREFIX}{digits}"
            try:
                self.storage.insert(self.numbers_table, number, {"id": number, "account_id": account_id})
            except DuplicateRecord:
                continue
            return number
        raise ConcurrencyError("Could not allocate a unique account number")

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['balance'] = str(account.balance)
        result['account_type'] = account.account_type.value
        result['status'] = account.status.value
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            account_number=data['account_number'],
            account_type=AccountType(data['account_type']),
            balance=parse_stored(data['balance']),
            status=AccountStatus(data['status'])
        )
