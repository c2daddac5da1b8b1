"""
Event Hook Module

The engine is pull-based: callers query the ledger and accounts. This module
is the optional change-notification hook on top of that. Services publish
after their unit of work has committed, so a subscriber can never see (or
undo) a change that was rolled back.

OTP mail delivery plugs in here through OtpDeliveryHook; the transport
itself lives outside funds_core.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
import logging
import uuid


class DomainEvent(Enum):
    """Change notifications published by funds_core services"""

    TRANSACTION_COMPLETED = "transaction.completed"
    TRANSACTION_REVERSED = "transaction.reversed"
    BALANCE_ADJUSTED = "balance.adjusted"

    ACCOUNT_CREATED = "account.created"
    ACCOUNT_STATUS_CHANGED = "account.status_changed"

    OTP_ISSUED = "otp.issued"

    AUTHORIZATION_EXECUTED = "authorization.executed"
    AUTHORIZATION_FAILED = "authorization.failed"


Handler = Callable[['EventPayload'], None]


@dataclass
class EventPayload:
    """One published change"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'timestamp': self.timestamp.isoformat(),
            'data': self.data
        }


@dataclass
class DeliveryFailure:
    """A handler that raised while an event was being delivered"""
    event_id: str
    event_type: DomainEvent
    handler_name: str
    error: str


class EventDispatcher:
    """
    In-process publish/subscribe

    Handlers run synchronously on the publishing thread, outside the
    dispatcher lock. A failing handler is logged and recorded in
    ``failures``; the remaining handlers still run.
    """

    def __init__(self, max_failures: int = 100):
        self._handlers: Dict[Optional[DomainEvent], List[Handler]] = {}
        self._lock = RLock()
        self.max_failures = max_failures
        self.failures: List[DeliveryFailure] = []
        self.logger = logging.getLogger("funds_core.events")

    def subscribe(self, event_type: DomainEvent, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for one event type

        Returns:
            A callable that removes the subscription again
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        """Register a handler for every event type"""
        with self._lock:
            self._handlers.setdefault(None, []).append(handler)
        return lambda: self.unsubscribe(None, handler)

    def unsubscribe(self, event_type: Optional[DomainEvent], handler: Handler) -> bool:
        """Remove a handler. Returns False if it was not subscribed"""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def publish(self, event: EventPayload) -> None:
        with self._lock:
            handlers = self._handlers.get(event.event_type, []) + self._handlers.get(None, [])

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self._record_failure(event, handler, e)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self.failures.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Handlers for one event type, or every registered handler"""
        with self._lock:
            if event_type is not None:
                return len(self._handlers.get(event_type, []))
            return sum(len(handlers) for handlers in self._handlers.values())

    def _record_failure(self, event: EventPayload, handler: Handler, error: Exception) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        self.logger.error(f"Handler {name} failed for {event.event_type.value} {event.entity_id}: {error}")
        with self._lock:
            self.failures.append(DeliveryFailure(event.event_id, event.event_type, name, str(error)))
            del self.failures[:-self.max_failures]


class EventPublisherMixin:
    """Optional publishing for services; silent when no dispatcher is attached"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        self._event_dispatcher = event_dispatcher

    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any]) -> None:
        if self._event_dispatcher is not None:
            self._event_dispatcher.publish(EventPayload(event_type, entity_type, entity_id, data))


class OtpDeliveryHook:
    """
    Forwards freshly issued OTPs to a mail (or SMS) transport

    ``send`` is called as ``send(user_id, code, expires_at)``. A transport
    failure does not revoke the OTP; the user can request a new one.
    """

    def __init__(self, send: Callable[[str, str, str], None]):
        self.send = send
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, dispatcher: EventDispatcher) -> None:
        self._unsubscribe = dispatcher.subscribe(DomainEvent.OTP_ISSUED, self)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __call__(self, event: EventPayload) -> None:
        self.send(event.entity_id, event.data["code"], event.data["expires_at"])
