"""
Transfer Authorization Module

Server-side step-up state machine in front of the transfer engine.

PIN path:  collecting_details -> awaiting_pin -> [awaiting_cot] ->
           [awaiting_secure_id] -> authorized -> executed
OTP path:  collecting_details -> awaiting_otp -> authorized -> executed

Any non-terminal attempt can end in ``failed`` (cancelled, expired or the
transfer itself was refused). Factors must be presented in order; a wrong
code leaves the attempt where it was. No lock is held between steps.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .errors import (
    BankingError, ConcurrencyError, InvalidCredential, InvalidTransition,
    AttemptNotFound, InvalidState, MissingField, ValidationError
)
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .ledger import LedgerEntry
from .logging_config import get_logger, log_action
from .money import AmountLike, parse_stored
from .storage import StorageInterface, StorageRecord
from .transfers import TransferEngine
from .verification import VerificationService, StepUpKind


class AttemptState(Enum):
    """Authorization attempt states"""
    COLLECTING_DETAILS = "collecting_details"
    AWAITING_PIN = "awaiting_pin"
    AWAITING_COT = "awaiting_cot"
    AWAITING_SECURE_ID = "awaiting_secure_id"
    AWAITING_OTP = "awaiting_otp"
    AUTHORIZED = "authorized"
    EXECUTED = "executed"
    FAILED = "failed"


class Factor(Enum):
    """Credentials presented during authorization"""
    PIN = "pin"
    COT = "cot"
    SECURE_ID = "secure_id"
    OTP = "otp"


class AuthorizationMethod(Enum):
    PIN = "pin"
    OTP = "otp"


AWAITING_STATES = {
    Factor.PIN: AttemptState.AWAITING_PIN,
    Factor.COT: AttemptState.AWAITING_COT,
    Factor.SECURE_ID: AttemptState.AWAITING_SECURE_ID,
    Factor.OTP: AttemptState.AWAITING_OTP,
}

TERMINAL_STATES = {AttemptState.EXECUTED, AttemptState.FAILED}


@dataclass
class AuthorizationAttempt(StorageRecord):
    """Durable record of one transfer authorization"""
    user_id: str
    sender_account_id: str
    receiver_account_id: str
    amount: Decimal
    method: AuthorizationMethod
    expires_at: datetime
    narration: str = ""
    state: AttemptState = AttemptState.COLLECTING_DETAILS
    required_factors: List[str] = field(default_factory=list)
    completed_factors: List[str] = field(default_factory=list)
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def awaited_factor(self) -> Optional[Factor]:
        for factor, state in AWAITING_STATES.items():
            if state == self.state:
                return factor
        return None

    def next_state(self) -> AttemptState:
        """First outstanding factor, or authorized once all are in"""
        for name in self.required_factors:
            if name not in self.completed_factors:
                return AWAITING_STATES[Factor(name)]
        return AttemptState.AUTHORIZED


class TransferAuthorizer(EventPublisherMixin):
    """
    Drives authorization attempts and hands authorized ones to the engine
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        engine: TransferEngine,
        verification: VerificationService,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        attempt_ttl_seconds: int = 900
    ):
        self.storage = storage
        self.accounts = accounts
        self.engine = engine
        self.verification = verification
        self.audit = audit_trail
        self.attempt_ttl = timedelta(seconds=attempt_ttl_seconds)
        self.table_name = "authorization_attempts"
        self.logger = get_logger("funds_core.authorization")
        self.set_event_dispatcher(event_dispatcher)

    def begin_transfer(
        self,
        user_id: str,
        sender_account_id: str,
        receiver_account_number: str,
        amount: AmountLike,
        narration: str = "",
        method: Union[AuthorizationMethod, str] = AuthorizationMethod.PIN,
        issue_otp: bool = True
    ) -> AuthorizationAttempt:
        """
        Validate the transfer details and open an attempt

        Raises:
            ValidationError, AccountNotFound, InvalidState (no PIN set)
        """
        try:
            method = AuthorizationMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown authorization method: {method}")

        receiver_account_id = self.engine.resolve_receiver(receiver_account_number)
        amount = self.engine.validate(sender_account_id, receiver_account_id, amount)
        self.accounts.require_owned(sender_account_id, user_id)

        if method == AuthorizationMethod.PIN:
            if not self.verification.has_pin(user_id):
                raise InvalidState("Set a transaction PIN before making transfers")
            settings = self.verification.get_step_up_settings(user_id)
            required = [Factor.PIN.value]
            if settings.enabled(StepUpKind.COT):
                required.append(Factor.COT.value)
            if settings.enabled(StepUpKind.SECURE_ID):
                required.append(Factor.SECURE_ID.value)
        else:
            required = [Factor.OTP.value]

        now = datetime.now(timezone.utc)
        attempt = AuthorizationAttempt(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            sender_account_id=sender_account_id,
            receiver_account_id=receiver_account_id,
            amount=amount,
            method=method,
            expires_at=now + self.attempt_ttl,
            narration=narration or "",
            required_factors=required
        )
        attempt.state = attempt.next_state()
        self._save_attempt(attempt)

        self.audit.log_event(
            AuditEventType.AUTHORIZATION_STARTED, "authorization", attempt.id,
            {
                "method": method.value,
                "required_factors": required,
                "sender_account_id": sender_account_id,
                "receiver_account_id": receiver_account_id,
                "amount": amount
            },
            user_id
        )

        if method == AuthorizationMethod.OTP and issue_otp:
            self.verification.issue_otp(user_id)

        return attempt

    def submit_factor(self, attempt_id: str, user_id: str, factor: Union[Factor, str],
                      code: str) -> AuthorizationAttempt:
        """
        Present the next credential

        Raises:
            AttemptNotFound, InvalidTransition (wrong step, expired, finished),
            InvalidCredential (wrong code; the attempt stays where it was)
        """
        try:
            factor = Factor(factor)
        except ValueError:
            raise ValidationError(f"Unknown factor: {factor}")

        with self.storage.lock_records([(self.table_name, attempt_id)]):
            attempt = self._load_live(attempt_id, user_id)

            if attempt.awaited_factor != factor:
                raise InvalidTransition(
                    f"Attempt is {attempt.state.value}, cannot accept {factor.value}"
                )

            if not self._check_factor(user_id, factor, code):
                log_action(self.logger, "warning", "Authorization factor rejected",
                           user_id=user_id, action="factor_rejected", resource=attempt_id,
                           extra={"factor": factor.value})
                raise InvalidCredential(f"{factor.value} did not match")

            attempt.completed_factors.append(factor.value)
            attempt.state = attempt.next_state()
            attempt.updated_at = datetime.now(timezone.utc)
            self._save_attempt(attempt)

        self.audit.log_event(
            AuditEventType.AUTHORIZATION_ADVANCED, "authorization", attempt.id,
            {"factor": factor.value, "state": attempt.state.value},
            user_id
        )
        return attempt

    def execute(self, attempt_id: str, user_id: str) -> LedgerEntry:
        """
        Run the transfer for an authorized attempt, exactly once

        The attempt flips to executed in the same unit of work as the
        transfer, under the attempt lock, so a second call is refused.

        Raises:
            AttemptNotFound, InvalidTransition, plus any transfer failure
            (which also moves the attempt to failed)
        """
        with self.storage.lock_records([(self.table_name, attempt_id)]):
            attempt = self._load_live(attempt_id, user_id)
            if attempt.state != AttemptState.AUTHORIZED:
                raise InvalidTransition(f"Attempt is {attempt.state.value}, not authorized")

            def mark_executed(entry: LedgerEntry) -> None:
                attempt.state = AttemptState.EXECUTED
                attempt.transaction_id = entry.id
                attempt.updated_at = datetime.now(timezone.utc)
                self._save_attempt(attempt)

            try:
                entry = self._execute_with_retry(attempt, mark_executed)
            except BankingError as e:
                self._fail(attempt, e.code)
                raise

        self.audit.log_event(
            AuditEventType.AUTHORIZATION_EXECUTED, "authorization", attempt.id,
            {"transaction_id": entry.id, "reference_code": entry.reference_code},
            user_id
        )
        self.publish_event(DomainEvent.AUTHORIZATION_EXECUTED, "authorization", attempt.id, {
            "transaction_id": entry.id,
            "reference_code": entry.reference_code
        })
        return entry

    def cancel(self, attempt_id: str, user_id: str) -> AuthorizationAttempt:
        """
        Abandon an attempt that has not finished

        Raises:
            AttemptNotFound, InvalidTransition
        """
        with self.storage.lock_records([(self.table_name, attempt_id)]):
            attempt = self._load_owned(attempt_id, user_id)
            if attempt.is_terminal:
                raise InvalidTransition(f"Attempt is already {attempt.state.value}")
            self._fail(attempt, "cancelled")
        return attempt

    def get_attempt(self, attempt_id: str, user_id: str) -> AuthorizationAttempt:
        """Current attempt state; expired attempts are reported as failed"""
        with self.storage.lock_records([(self.table_name, attempt_id)]):
            attempt = self._load_owned(attempt_id, user_id)
            if not attempt.is_terminal and self._expired(attempt):
                self._fail(attempt, "expired")
        return attempt

    # One-shot wrappers

    def transfer_with_pin(
        self,
        user_id: str,
        sender_account_id: str,
        receiver_account_number: str,
        amount: AmountLike,
        pin: str,
        narration: str = "",
        cot_code: Optional[str] = None,
        secure_id_code: Optional[str] = None
    ) -> LedgerEntry:
        """
        Run the whole PIN path in one call

        Raises:
            InvalidCredential if any code is wrong, MissingField if an
            enabled step-up code was not supplied
        """
        attempt = self.begin_transfer(
            user_id, sender_account_id, receiver_account_number, amount,
            narration, AuthorizationMethod.PIN
        )
        codes = {
            Factor.PIN: pin,
            Factor.COT: cot_code,
            Factor.SECURE_ID: secure_id_code,
        }

        try:
            while attempt.state != AttemptState.AUTHORIZED:
                factor = attempt.awaited_factor
                code = codes.get(factor)
                if not code:
                    raise MissingField(f"{factor.value} code is required")
                attempt = self.submit_factor(attempt.id, user_id, factor, code)
        except BankingError:
            self._abandon(attempt.id, user_id)
            raise

        return self.execute(attempt.id, user_id)

    def verify_otp_and_transfer(
        self,
        user_id: str,
        otp_code: str,
        sender_account_id: str,
        receiver_account_number: str,
        amount: AmountLike,
        narration: str = ""
    ) -> LedgerEntry:
        """
        Consume a previously requested OTP and transfer

        The transfer details are checked before the OTP is touched, so a
        typo in the receiver does not burn the code.
        """
        attempt = self.begin_transfer(
            user_id, sender_account_id, receiver_account_number, amount,
            narration, AuthorizationMethod.OTP, issue_otp=False
        )
        try:
            self.submit_factor(attempt.id, user_id, Factor.OTP, otp_code)
        except BankingError:
            self._abandon(attempt.id, user_id)
            raise

        return self.execute(attempt.id, user_id)

    # Internals

    def _abandon(self, attempt_id: str, user_id: str) -> None:
        """Fail an attempt left behind by a one-shot wrapper"""
        with self.storage.lock_records([(self.table_name, attempt_id)]):
            attempt = self._load_owned(attempt_id, user_id)
            if not attempt.is_terminal:
                self._fail(attempt, "abandoned")

    def _check_factor(self, user_id: str, factor: Factor, code: str) -> bool:
        if not code:
            return False
        if factor == Factor.PIN:
            return self.verification.verify_pin(user_id, code)
        if factor == Factor.OTP:
            return self.verification.verify_otp(user_id, code)
        return self.verification.verify_step_up_code(user_id, StepUpKind(factor.value), code)

    def _execute_with_retry(self, attempt: AuthorizationAttempt, mark_executed) -> LedgerEntry:
        """One retry on a concurrency conflict"""
        for tries_left in (1, 0):
            try:
                return self.engine.execute(
                    attempt.sender_account_id,
                    attempt.receiver_account_id,
                    attempt.amount,
                    attempt.narration,
                    initiated_by=attempt.user_id,
                    extra_writes=mark_executed
                )
            except ConcurrencyError:
                if not tries_left:
                    raise
                self.logger.info(f"Retrying attempt {attempt.id} after a concurrency conflict")

    def _expired(self, attempt: AuthorizationAttempt) -> bool:
        return datetime.now(timezone.utc) >= attempt.expires_at

    def _load_owned(self, attempt_id: str, user_id: str) -> AuthorizationAttempt:
        data = self.storage.load(self.table_name, attempt_id)
        if not data or data['user_id'] != user_id:
            raise AttemptNotFound(f"Authorization attempt {attempt_id} not found")
        return self._attempt_from_dict(data)

    def _load_live(self, attempt_id: str, user_id: str) -> AuthorizationAttempt:
        """Owned, unfinished and unexpired; expiry is recorded as a failure"""
        attempt = self._load_owned(attempt_id, user_id)
        if attempt.is_terminal:
            raise InvalidTransition(f"Attempt is already {attempt.state.value}")
        if self._expired(attempt):
            self._fail(attempt, "expired")
            raise InvalidTransition("Authorization attempt expired")
        return attempt

    def _fail(self, attempt: AuthorizationAttempt, reason: str) -> None:
        attempt.state = AttemptState.FAILED
        attempt.failure_reason = reason
        attempt.updated_at = datetime.now(timezone.utc)
        self._save_attempt(attempt)

        self.audit.log_event(
            AuditEventType.AUTHORIZATION_FAILED, "authorization", attempt.id,
            {"reason": reason}, attempt.user_id
        )
        log_action(self.logger, "info", f"Authorization attempt failed: {reason}",
                   user_id=attempt.user_id, action="authorization_failed", resource=attempt.id)
        self.publish_event(DomainEvent.AUTHORIZATION_FAILED, "authorization", attempt.id, {"reason": reason})

    def _save_attempt(self, attempt: AuthorizationAttempt) -> None:
        data = attempt.to_dict()
        data['amount'] = str(attempt.amount)
        data['method'] = attempt.method.value
        data['state'] = attempt.state.value
        self.storage.save(self.table_name, attempt.id, data)

    def _attempt_from_dict(self, data: Dict) -> AuthorizationAttempt:
        return AuthorizationAttempt(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            sender_account_id=data['sender_account_id'],
            receiver_account_id=data['receiver_account_id'],
            amount=parse_stored(data['amount']),
            method=AuthorizationMethod(data['method']),
            expires_at=datetime.fromisoformat(data['expires_at']),
            narration=data.get('narration', ''),
            state=AttemptState(data['state']),
            required_factors=list(data.get('required_factors', [])),
            completed_factors=list(data.get('completed_factors', [])),
            transaction_id=data.get('transaction_id'),
            failure_reason=data.get('failure_reason')
        )
