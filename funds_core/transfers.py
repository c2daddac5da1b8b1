"""
Transfer Engine Module

Moves money between two accounts: debit sender, credit receiver and append
the completed ledger entry, all in one storage unit of work under both
account locks. Either everything lands or nothing does.
"""

from decimal import Decimal
from typing import Callable, Optional

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .cards import CardGate
from .errors import BankingError, InvalidAmount, SameAccount, MissingField, AccountNotFound
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .ledger import Ledger, LedgerEntry, TransactionType
from .logging_config import get_logger, log_action
from .money import AmountLike, ZERO, to_amount
from .storage import StorageInterface


class TransferEngine(EventPublisherMixin):
    """
    Executes internal transfers atomically
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        ledger: Ledger,
        audit_trail: AuditTrail,
        card_gate: Optional[CardGate] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        max_transfer_amount: Decimal = Decimal("1000000.00")
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.audit = audit_trail
        self.card_gate = card_gate
        self.max_transfer_amount = max_transfer_amount
        self.logger = get_logger("funds_core.transfers")
        self.set_event_dispatcher(event_dispatcher)

    def validate_amount(self, amount: AmountLike) -> Decimal:
        """
        Raises:
            InvalidAmount: If not positive, over the maximum, or finer than a cent
        """
        amount = to_amount(amount)
        if amount <= ZERO:
            raise InvalidAmount("Amount must be greater than zero")
        if amount > self.max_transfer_amount:
            raise InvalidAmount(f"Amount exceeds the maximum of {self.max_transfer_amount}")
        return amount

    def validate(self, sender_account_id: str, receiver_account_id: str, amount: AmountLike) -> Decimal:
        """
        Structural checks that need no store access

        Returns:
            The validated, quantized amount

        Raises:
            MissingField, InvalidAmount, SameAccount
        """
        if not sender_account_id or not receiver_account_id:
            raise MissingField("Sender and receiver accounts are required")

        amount = self.validate_amount(amount)

        if sender_account_id == receiver_account_id:
            raise SameAccount()

        return amount

    def execute(
        self,
        sender_account_id: str,
        receiver_account_id: str,
        amount: AmountLike,
        narration: str = "",
        initiated_by: Optional[str] = None,
        extra_writes: Optional[Callable[[LedgerEntry], None]] = None
    ) -> LedgerEntry:
        """
        Transfer funds between two accounts

        Args:
            sender_account_id: Account to debit
            receiver_account_id: Account to credit
            amount: Positive amount with at most two decimal places
            narration: Free text shown on the ledger entry
            initiated_by: User id recorded on the entry
            extra_writes: Called with the new entry inside the same unit of
                work, for records that must commit together with it

        Returns:
            The completed transfer ledger entry

        Raises:
            InvalidAmount, SameAccount, MissingField, AccountNotFound,
            AccountFrozen, InsufficientFunds, CardRequired
        """
        amount = self.validate(sender_account_id, receiver_account_id, amount)

        try:
            if self.card_gate is not None:
                sender = self.accounts.require_account(sender_account_id)
                self.card_gate.check(sender.user_id)

            keys = [
                (self.accounts.accounts_table, sender_account_id),
                (self.accounts.accounts_table, receiver_account_id),
            ]
            with self.storage.lock_records(keys):
                with self.storage.atomic():
                    self.accounts.debit(sender_account_id, amount)
                    self.accounts.credit(receiver_account_id, amount)
                    entry = self.ledger.append(
                        transaction_type=TransactionType.TRANSFER,
                        amount=amount,
                        sender_account_id=sender_account_id,
                        receiver_account_id=receiver_account_id,
                        narration=narration,
                        initiated_by=initiated_by
                    )
                    if extra_writes is not None:
                        extra_writes(entry)
        except BankingError as e:
            self.audit.log_event(
                AuditEventType.TRANSFER_FAILED, "account", sender_account_id,
                {
                    "receiver_account_id": receiver_account_id,
                    "amount": amount,
                    "reason": e.code
                },
                initiated_by
            )
            log_action(self.logger, "warning", f"Transfer rejected: {e.message}",
                       user_id=initiated_by, action="transfer_failed",
                       resource=sender_account_id, extra={"reason": e.code})
            raise

        self.audit.log_event(
            AuditEventType.TRANSFER_COMPLETED, "transaction", entry.id,
            {
                "reference_code": entry.reference_code,
                "sender_account_id": sender_account_id,
                "receiver_account_id": receiver_account_id,
                "amount": amount
            },
            initiated_by
        )
        log_action(self.logger, "info", "Transfer executed", user_id=initiated_by,
                   action="transfer_executed", resource=entry.id,
                   extra={"reference_code": entry.reference_code, "amount": str(amount)})
        self.publish_event(DomainEvent.TRANSACTION_COMPLETED, "transaction", entry.id, {
            "reference_code": entry.reference_code,
            "transaction_type": entry.transaction_type.value,
            "sender_account_id": sender_account_id,
            "receiver_account_id": receiver_account_id,
            "amount": str(amount)
        })

        return entry

    def resolve_receiver(self, receiver_account_number: str) -> str:
        """Turn an account number into an account id"""
        if not receiver_account_number:
            raise MissingField("Receiver account number is required")
        receiver = self.accounts.get_account_by_number(receiver_account_number.strip())
        if receiver is None:
            raise AccountNotFound("Receiver account not found")
        return receiver.id

    def transfer_by_account_number(
        self,
        sender_account_id: str,
        receiver_account_number: str,
        amount: AmountLike,
        narration: str = "",
        initiated_by: Optional[str] = None
    ) -> LedgerEntry:
        """Transfer to an account identified by its account number"""
        receiver_account_id = self.resolve_receiver(receiver_account_number)
        return self.execute(sender_account_id, receiver_account_id, amount, narration, initiated_by)

    def transfer_funds(
        self,
        user_id: str,
        sender_account_id: str,
        receiver_account_number: str,
        amount: AmountLike,
        narration: str = ""
    ) -> LedgerEntry:
        """
        Transfer on behalf of a user, who must own the sender account

        Raises:
            AccountNotFound: If the sender is not one of the user's accounts
        """
        if not sender_account_id:
            raise MissingField("Sender account is required")
        self.validate_amount(amount)
        self.accounts.require_owned(sender_account_id, user_id)
        return self.transfer_by_account_number(
            sender_account_id, receiver_account_number, amount, narration, initiated_by=user_id
        )
