"""
Debit Card Gate Module

Card issuance happens elsewhere; this module only records issued cards and
answers whether a user may make transfers. When the gate is enabled, a
user needs at least one active debit card before money can leave their
accounts.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
import uuid

from .errors import CardRequired
from .storage import StorageInterface, StorageRecord


class CardStatus(Enum):
    """Card states"""
    PENDING = "pending"
    ACTIVE = "active"
    BLOCKED = "blocked"


@dataclass
class DebitCard(StorageRecord):
    """Issued debit card"""
    user_id: str
    account_id: str
    status: CardStatus = CardStatus.PENDING


class CardGate:
    """Checks debit card ownership before transfers"""

    def __init__(self, storage: StorageInterface, enabled: bool = False):
        self.storage = storage
        self.enabled = enabled
        self.table_name = "cards"

    def record_card(self, user_id: str, account_id: str, status: CardStatus = CardStatus.ACTIVE) -> DebitCard:
        """Record a card issued by the card workflow"""
        now = datetime.now(timezone.utc)
        card = DebitCard(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            account_id=account_id,
            status=CardStatus(status)
        )
        self.storage.save(self.table_name, card.id, card.to_dict())
        return card

    def has_active_card(self, user_id: str) -> bool:
        return bool(self.storage.find(self.table_name, {
            'user_id': user_id,
            'status': CardStatus.ACTIVE.value
        }))

    def check(self, user_id: str) -> None:
        """
        Raises:
            CardRequired: If the gate is on and the user has no active card
        """
        if self.enabled and not self.has_active_card(user_id):
            raise CardRequired("You will need an active debit card to make transfers")
