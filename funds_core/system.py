"""
Banking system wiring

Builds every funds_core component over one storage backend from a
FundsCoreConfig. This is the library entry point; the HTTP layer holds one
instance.
"""

from typing import Callable, List, Optional

from .accounts import AccountStore
from .admin import AdminService
from .audit import AuditTrail
from .authorization import TransferAuthorizer
from .cards import CardGate
from .config import FundsCoreConfig, get_config
from .events import EventDispatcher, OtpDeliveryHook
from .ledger import Ledger, LedgerEntry
from .logging_config import get_logger
from .roles import RoleDirectory
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine
from .verification import VerificationService, policy_from_name


class BankingSystem:
    """funds_core with all components initialized"""

    def __init__(
        self,
        config: Optional[FundsCoreConfig] = None,
        storage: Optional[StorageInterface] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        otp_sender: Optional[Callable[[str, str, str], None]] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("funds_core.system")

        self.storage = storage or create_storage(
            self.config.database_url,
            busy_timeout_ms=self.config.sqlite_busy_timeout_ms,
            lock_timeout=self.config.lock_timeout_seconds
        )
        self.events = event_dispatcher or EventDispatcher()
        self.otp_delivery = None
        if otp_sender is not None:
            self.otp_delivery = OtpDeliveryHook(otp_sender)
            self.otp_delivery.attach(self.events)

        self.audit_trail = AuditTrail(self.storage)
        self.roles = RoleDirectory(self.storage, self.audit_trail)
        self.cards = CardGate(self.storage, enabled=self.config.require_debit_card)
        self.accounts = AccountStore(self.storage, self.audit_trail, self.events)
        self.ledger = Ledger(self.storage, reference_code_length=self.config.reference_code_length)
        self.verification = VerificationService(
            self.storage, self.audit_trail, self.events,
            otp_ttl_seconds=self.config.otp_ttl_seconds,
            otp_length=self.config.otp_length,
            pin_length=self.config.pin_length,
            step_up_policy=policy_from_name(self.config.step_up_policy)
        )
        self.transfers = TransferEngine(
            self.storage, self.accounts, self.ledger, self.audit_trail,
            card_gate=self.cards,
            event_dispatcher=self.events,
            max_transfer_amount=self.config.max_transfer
        )
        self.admin = AdminService(
            self.storage, self.accounts, self.ledger, self.roles, self.audit_trail, self.events
        )
        self.authorizer = TransferAuthorizer(
            self.storage, self.accounts, self.transfers, self.verification, self.audit_trail,
            self.events, attempt_ttl_seconds=self.config.attempt_ttl_seconds
        )

    def list_user_transactions(self, user_id: str, limit: Optional[int] = 50) -> List[LedgerEntry]:
        """Ledger entries across every account the user owns, newest first"""
        account_ids = [account.id for account in self.accounts.list_user_accounts(user_id)]
        return self.ledger.list_by_accounts(account_ids, limit=limit)

    def close(self) -> None:
        self.storage.close()
