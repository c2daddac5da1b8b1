"""
funds_core: atomic funds transfers with step-up authorization

Single-currency account balances, an append-only transaction ledger,
admin adjustments and reversals, and a PIN / COT / Secure-ID / OTP
authorization flow in front of every customer transfer.
"""

__version__ = "1.0.0"

from .accounts import Account, AccountStore, AccountStatus, AccountType
from .admin import AdminService
from .audit import AuditTrail, AuditEventType
from .authorization import TransferAuthorizer, AuthorizationAttempt, AttemptState, Factor, AuthorizationMethod
from .config import FundsCoreConfig, get_config
from .errors import (
    BankingError, ValidationError, InvalidAmount, SameAccount, MissingField,
    AuthorizationError, InvalidCredential, NotAdmin,
    StateError, AccountNotFound, TransactionNotFound, AttemptNotFound,
    InsufficientFunds, AccountFrozen, AlreadyReversed, InvalidState,
    InvalidTransition, CardRequired, ConcurrencyError
)
from .events import EventDispatcher, DomainEvent, EventPayload, OtpDeliveryHook
from .ledger import Ledger, LedgerEntry, TransactionType, TransactionStatus
from .roles import RoleDirectory, AppRole
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage
from .system import BankingSystem
from .transfers import TransferEngine
from .verification import VerificationService, StepUpKind, DurableCodePolicy, SingleUseCodePolicy

__all__ = [
    "Account", "AccountStore", "AccountStatus", "AccountType",
    "AdminService",
    "AuditTrail", "AuditEventType",
    "TransferAuthorizer", "AuthorizationAttempt", "AttemptState", "Factor", "AuthorizationMethod",
    "FundsCoreConfig", "get_config",
    "BankingError", "ValidationError", "InvalidAmount", "SameAccount", "MissingField",
    "AuthorizationError", "InvalidCredential", "NotAdmin",
    "StateError", "AccountNotFound", "TransactionNotFound", "AttemptNotFound",
    "InsufficientFunds", "AccountFrozen", "AlreadyReversed", "InvalidState",
    "InvalidTransition", "CardRequired", "ConcurrencyError",
    "EventDispatcher", "DomainEvent", "EventPayload", "OtpDeliveryHook",
    "Ledger", "LedgerEntry", "TransactionType", "TransactionStatus",
    "RoleDirectory", "AppRole",
    "StorageInterface", "InMemoryStorage", "SQLiteStorage",
    "BankingSystem",
    "TransferEngine",
    "VerificationService", "StepUpKind", "DurableCodePolicy", "SingleUseCodePolicy",
]
