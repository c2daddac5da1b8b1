"""
Audit Trail Module

Append-only record of every account, ledger, credential and authorization
change. Each event stores the SHA-256 digest of its predecessor, so editing
or deleting a stored event shows up in verify_integrity().

Events are written after the change they describe has committed (or
failed), never inside a storage unit of work, so the chain does not point
at rows that were rolled back. Metadata never carries PINs or codes; secret
keys are masked before hashing as a backstop.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .logging_config import redact
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """What happened"""
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_FROZEN = "account_frozen"
    ACCOUNT_UNFROZEN = "account_unfrozen"
    KYC_APPROVED = "kyc_approved"

    TRANSFER_COMPLETED = "transfer_completed"
    TRANSFER_FAILED = "transfer_failed"
    BALANCE_ADJUSTED = "balance_adjusted"
    TRANSACTION_REVERSED = "transaction_reversed"

    PIN_SET = "pin_set"
    PIN_VERIFICATION_FAILED = "pin_verification_failed"
    OTP_ISSUED = "otp_issued"
    OTP_CONSUMED = "otp_consumed"
    OTP_REJECTED = "otp_rejected"
    STEP_UP_CONFIGURED = "step_up_configured"
    STEP_UP_FAILED = "step_up_failed"

    AUTHORIZATION_STARTED = "authorization_started"
    AUTHORIZATION_ADVANCED = "authorization_advanced"
    AUTHORIZATION_EXECUTED = "authorization_executed"
    AUTHORIZATION_FAILED = "authorization_failed"

    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"
    ADMIN_ACCESS_DENIED = "admin_access_denied"


GENESIS_HASH = ""


def _jsonable(value: Any) -> Any:
    """Money, timestamps and enums as the strings they are stored as"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def chain_digest(fields: Dict[str, Any]) -> str:
    """SHA-256 over the canonical (sorted, compact) JSON of ``fields``"""
    canonical = json.dumps(fields, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class AuditEvent(StorageRecord):
    """One link of the chain"""
    event_type: AuditEventType
    entity_type: str  # account, transaction, user, authorization
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _jsonable(redact(self.metadata or {}))

    def hashed_fields(self) -> Dict[str, Any]:
        # current_hash is excluded; it is the output
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

    def calculate_hash(self) -> str:
        return chain_digest(self.hashed_fields())

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data[key], str):
                data[key] = datetime.fromisoformat(data[key])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail

    Appends are serialized by an in-process lock; the head of the chain is
    read back from storage on construction so a restarted process keeps
    extending the same chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._head = GENESIS_HASH

        stored = self.storage.load_all(self.table_name)
        if stored:
            self._head = stored[-1].get('current_hash') or GENESIS_HASH

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: account, transaction, user or authorization
            entity_id: ID of the entity
            metadata: Event details (amounts, references, reasons)
            user_id: Who caused it, when known

        Returns:
            The stored AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._head,
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = event.current_hash
            return event

    def _query(self, filters: Dict[str, Any], limit: Optional[int]) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        return events[-limit:] if limit else events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events about one entity, oldest first; ``limit`` keeps the most recent"""
        return self._query({'entity_type': entity_type, 'entity_id': entity_id}, limit)

    def get_events_by_type(self, event_type: AuditEventType, limit: Optional[int] = None) -> List[AuditEvent]:
        return self._query({'event_type': event_type.value}, limit)

    def get_events_by_user(self, user_id: str, limit: Optional[int] = None) -> List[AuditEvent]:
        """Events caused by one user, oldest first"""
        return self._query({'user_id': user_id}, limit)

    def get_all_events(self) -> List[AuditEvent]:
        """Every event in chain order"""
        return [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain

        Returns:
            ``valid`` plus ``total_events``; ``hash_errors`` lists events
            whose stored digest no longer matches their content and
            ``chain_breaks`` lists events whose predecessor link is wrong
            (an edited or deleted event before them).
        """
        events = self.get_all_events()
        hash_errors = []
        chain_breaks = []

        expected_previous = GENESIS_HASH
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Digest at the head of the chain, None while the chain is empty"""
        return self._head or None
