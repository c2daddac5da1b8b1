"""
Transaction Ledger Module

Append-only ledger of money movements. Entries are written directly as
completed inside the caller's unit of work; the only later change allowed
is completed -> reversed, recorded together with a new reversal entry.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set
from enum import Enum
import secrets
import threading
import uuid

from .errors import InvalidState, AlreadyReversed, TransactionNotFound, ConcurrencyError
from .money import to_amount, parse_stored
from .storage import StorageInterface, StorageRecord, DuplicateRecord


class TransactionType(Enum):
    """Kinds of ledger entry"""
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REVERSAL = "reversal"


class TransactionStatus(Enum):
    """Ledger entry states"""
    PENDING = "pending"
    COMPLETED = "completed"
    REVERSED = "reversed"


REFERENCE_PREFIXES = {
    TransactionType.TRANSFER: "TRF",
    TransactionType.DEPOSIT: "DEP",
    TransactionType.WITHDRAWAL: "WDL",
    TransactionType.REVERSAL: "REV",
}

# No 0/O, 1/I/L
REFERENCE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
_MAX_REFERENCE_ATTEMPTS = 8


@dataclass
class LedgerEntry(StorageRecord):
    """One money movement"""
    reference_code: str
    transaction_type: TransactionType
    amount: Decimal
    status: TransactionStatus
    sender_account_id: Optional[str] = None
    receiver_account_id: Optional[str] = None
    narration: str = ""
    initiated_by: Optional[str] = None
    reverses: Optional[str] = None
    reversed_by: Optional[str] = None

    @property
    def is_reversible(self) -> bool:
        return (
            self.status == TransactionStatus.COMPLETED
            and self.transaction_type != TransactionType.REVERSAL
            and self.reversed_by is None
        )


class Ledger:
    """
    Append-only transaction ledger
    """

    def __init__(self, storage: StorageInterface, reference_code_length: int = 8):
        self.storage = storage
        self.reference_code_length = reference_code_length
        self.table_name = "transactions"
        self.references_table = "reference_codes"
        # Codes handed out by this process but possibly not yet committed
        self._reserved: Set[str] = set()
        self._reserved_lock = threading.Lock()

    def append(
        self,
        transaction_type: TransactionType,
        amount: Decimal,
        sender_account_id: Optional[str] = None,
        receiver_account_id: Optional[str] = None,
        narration: str = "",
        initiated_by: Optional[str] = None,
        reverses: Optional[str] = None
    ) -> LedgerEntry:
        """
        Insert a completed entry inside the caller's unit of work

        Raises:
            InvalidState: If called outside a unit of work
            ConcurrencyError: If no unique reference code could be allocated
        """
        if not self.storage.in_transaction():
            raise InvalidState("Ledger entries must be written inside a storage unit of work")
        if sender_account_id is None and receiver_account_id is None:
            raise InvalidState("Ledger entry needs at least one account")

        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            reference_code="",
            transaction_type=transaction_type,
            amount=to_amount(amount),
            status=TransactionStatus.COMPLETED,
            sender_account_id=sender_account_id,
            receiver_account_id=receiver_account_id,
            narration=narration or "",
            initiated_by=initiated_by,
            reverses=reverses
        )
        entry.reference_code = self._allocate_reference(transaction_type, entry.id)
        self._save_entry(entry)
        return entry

    def mark_reversed(self, transaction_id: str, narration: Optional[str] = None,
                      initiated_by: Optional[str] = None) -> LedgerEntry:
        """
        Flip a completed entry to reversed and append its reversal entry

        Balance movements are the caller's job and must happen in the same
        unit of work.

        Returns:
            The new reversal entry

        Raises:
            TransactionNotFound, AlreadyReversed, InvalidState
        """
        original = self.require(transaction_id)

        if original.status == TransactionStatus.REVERSED or original.reversed_by:
            raise AlreadyReversed(f"Transaction {original.reference_code} already reversed")
        if original.status != TransactionStatus.COMPLETED:
            raise InvalidState(f"Transaction {original.reference_code} is {original.status.value}")
        if original.transaction_type == TransactionType.REVERSAL:
            raise InvalidState("A reversal entry cannot itself be reversed")

        reversal = self.append(
            transaction_type=TransactionType.REVERSAL,
            amount=original.amount,
            sender_account_id=original.receiver_account_id,
            receiver_account_id=original.sender_account_id,
            narration=narration or f"Reversal of {original.reference_code}",
            initiated_by=initiated_by,
            reverses=original.id
        )

        original.status = TransactionStatus.REVERSED
        original.reversed_by = reversal.id
        original.updated_at = reversal.created_at
        self._save_entry(original)

        return reversal

    def get(self, transaction_id: str) -> Optional[LedgerEntry]:
        """Get entry by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._entry_from_dict(data)
        return None

    def require(self, transaction_id: str) -> LedgerEntry:
        entry = self.get(transaction_id)
        if entry is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return entry

    def get_by_reference(self, reference_code: str) -> Optional[LedgerEntry]:
        """Get entry by its reference code"""
        found = self.storage.find(self.table_name, {"reference_code": reference_code})
        if found:
            return self._entry_from_dict(found[0])
        return None

    def list_by_account(self, account_id: str, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Entries where the account is sender or receiver, newest first"""
        return self.list_by_accounts([account_id], limit=limit)

    def list_by_accounts(self, account_ids: Iterable[str], limit: Optional[int] = None) -> List[LedgerEntry]:
        """Entries touching any of the given accounts, newest first"""
        wanted = set(account_ids)
        entries = [
            entry for entry in self._all_entries()
            if entry.sender_account_id in wanted or entry.receiver_account_id in wanted
        ]
        return self._newest_first(entries, limit)

    def list_by_status(self, status: TransactionStatus, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Entries in one status, newest first"""
        data = self.storage.find(self.table_name, {"status": status.value})
        return self._newest_first([self._entry_from_dict(d) for d in data], limit)

    def list_recent(self, limit: int = 50) -> List[LedgerEntry]:
        """Most recent entries across all accounts"""
        return self._newest_first(self._all_entries(), limit)

    def _all_entries(self) -> List[LedgerEntry]:
        return [self._entry_from_dict(d) for d in self.storage.load_all(self.table_name)]

    @staticmethod
    def _newest_first(entries: List[LedgerEntry], limit: Optional[int]) -> List[LedgerEntry]:
        # Storage order is insertion order; reverse first so ties keep it
        entries = list(reversed(entries))
        entries.sort(key=lambda e: e.created_at, reverse=True)
        if limit:
            entries = entries[:limit]
        return entries

    def _generate_reference(self, transaction_type: TransactionType) -> str:
        body = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(self.reference_code_length))
        return f"{REFERENCE_PREFIXES[transaction_type]}-{body}"

    def _allocate_reference(self, transaction_type: TransactionType, entry_id: str) -> str:
        """Generate a reference code no other entry holds; never overwrite"""
        for _ in range(_MAX_REFERENCE_ATTEMPTS):
            code = self._generate_reference(transaction_type)
            with self._reserved_lock:
                if code in self._reserved:
                    continue
                try:
                    self.storage.insert(self.references_table, code, {"id": code, "transaction_id": entry_id})
                except DuplicateRecord:
                    continue
                self._reserved.add(code)
            return code
        raise ConcurrencyError("Could not allocate a unique reference code")

    def _save_entry(self, entry: LedgerEntry) -> None:
        self.storage.save(self.table_name, entry.id, self._entry_to_dict(entry))

    def _entry_to_dict(self, entry: LedgerEntry) -> Dict:
        """Convert LedgerEntry to dictionary for storage"""
        result = entry.to_dict()
        result['amount'] = str(entry.amount)
        result['transaction_type'] = entry.transaction_type.value
        result['status'] = entry.status.value
        return result

    def _entry_from_dict(self, data: Dict) -> LedgerEntry:
        """Convert dictionary to LedgerEntry"""
        return LedgerEntry(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            reference_code=data['reference_code'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=parse_stored(data['amount']),
            status=TransactionStatus(data['status']),
            sender_account_id=data.get('sender_account_id'),
            receiver_account_id=data.get('receiver_account_id'),
            narration=data.get('narration', ''),
            initiated_by=data.get('initiated_by'),
            reverses=data.get('reverses'),
            reversed_by=data.get('reversed_by')
        )
