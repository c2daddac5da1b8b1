"""
Tests for the domain event dispatcher
"""

from funds_core.config import FundsCoreConfig
from funds_core.events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
from funds_core.roles import AppRole
from funds_core.system import BankingSystem


def _payload(event_type=DomainEvent.TRANSACTION_COMPLETED):
    return EventPayload(event_type=event_type, entity_type="transaction", entity_id="txn-1", data={"amount": "1.00"})


class TestEventDispatcher:
    """Test subscribe/publish behaviour"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()
        self.received = []

    def test_subscribe_and_publish(self):
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_COMPLETED, self.received.append)

        self.dispatcher.publish(_payload())
        self.dispatcher.publish(_payload(DomainEvent.OTP_ISSUED))

        assert len(self.received) == 1
        assert self.received[0].data == {"amount": "1.00"}

    def test_global_handlers_see_everything(self):
        self.dispatcher.subscribe_all(self.received.append)

        self.dispatcher.publish(_payload())
        self.dispatcher.publish(_payload(DomainEvent.ACCOUNT_CREATED))

        assert [e.event_type for e in self.received] == [
            DomainEvent.TRANSACTION_COMPLETED, DomainEvent.ACCOUNT_CREATED
        ]

    def test_unsubscribe(self):
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_COMPLETED, self.received.append)
        assert self.dispatcher.unsubscribe(DomainEvent.TRANSACTION_COMPLETED, self.received.append)
        assert not self.dispatcher.unsubscribe(DomainEvent.OTP_ISSUED, self.received.append)

        self.dispatcher.publish(_payload())
        assert self.received == []

    def test_subscribe_returns_unsubscriber(self):
        remove = self.dispatcher.subscribe_all(self.received.append)
        remove()

        self.dispatcher.publish(_payload())
        assert self.received == []
        assert self.dispatcher.get_handler_count() == 0

    def test_failing_handler_does_not_stop_others(self):
        def broken(event):
            raise RuntimeError("handler bug")

        self.dispatcher.subscribe(DomainEvent.TRANSACTION_COMPLETED, broken)
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_COMPLETED, self.received.append)

        event = _payload()
        self.dispatcher.publish(event)
        assert len(self.received) == 1

        failure = self.dispatcher.failures[0]
        assert failure.event_id == event.event_id
        assert failure.error == "handler bug"
        assert failure.handler_name.endswith("broken")

    def test_failures_are_bounded(self):
        dispatcher = EventDispatcher(max_failures=2)

        def broken(event):
            raise RuntimeError("down")

        dispatcher.subscribe_all(broken)
        events = [_payload() for _ in range(3)]
        for event in events:
            dispatcher.publish(event)

        assert [f.event_id for f in dispatcher.failures] == [e.event_id for e in events[1:]]

    def test_handler_count_and_clear(self):
        self.dispatcher.subscribe(DomainEvent.TRANSACTION_COMPLETED, self.received.append)
        self.dispatcher.subscribe(DomainEvent.OTP_ISSUED, self.received.append)
        self.dispatcher.subscribe_all(self.received.append)

        assert self.dispatcher.get_handler_count(DomainEvent.OTP_ISSUED) == 1
        assert self.dispatcher.get_handler_count() == 3

        self.dispatcher.clear()
        assert self.dispatcher.get_handler_count() == 0

    def test_payload_to_dict(self):
        data = _payload().to_dict()
        assert data["event_type"] == "transaction.completed"
        assert data["entity_id"] == "txn-1"
        assert data["event_id"]

    def test_publisher_without_dispatcher_is_silent(self):
        publisher = EventPublisherMixin()
        publisher.publish_event(DomainEvent.ACCOUNT_CREATED, "account", "a1", {})


class TestCommittedChangesPublishEvents:

    def test_failing_subscriber_never_undoes_a_transfer(self):
        system = BankingSystem(config=FundsCoreConfig(database_url="memory://"))
        system.roles.grant_role("admin-1", AppRole.ADMIN)
        alice = system.accounts.create_account("alice")
        bob = system.accounts.create_account("bob")
        system.admin.adjust_balance("admin-1", alice.id, "10.00", "deposit")

        def broken(event):
            raise RuntimeError("mailer down")

        system.events.subscribe(DomainEvent.TRANSACTION_COMPLETED, broken)
        entry = system.transfers.execute(alice.id, bob.id, "10.00")

        assert system.ledger.get(entry.id) is not None
        assert str(system.accounts.get_balance(bob.id)) == "10.00"

    def test_otp_delivery_hook(self):
        sent = []
        system = BankingSystem(
            config=FundsCoreConfig(database_url="memory://"),
            otp_sender=lambda user_id, code, expires_at: sent.append((user_id, code))
        )

        otp = system.verification.issue_otp("alice")
        assert sent == [("alice", otp.code)]

        system.otp_delivery.detach()
        system.verification.issue_otp("alice")
        assert len(sent) == 1
