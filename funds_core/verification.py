"""
Verification Service Module

Credential checks used by the transfer authorization flow:

- PIN: salted scrypt hash, reusable, constant-time comparison
- OTP: short numeric code, single use, expires after a few minutes
- COT / Secure-ID: optional per-user step-up codes, reusable by default
  (DurableCodePolicy) or consumed on success (SingleUseCodePolicy)

Plaintext PINs and codes are never logged or written to the audit trail.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import hashlib
import hmac
import secrets
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import ValidationError
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class StepUpKind(Enum):
    """Optional second-level factors"""
    COT = "cot"
    SECURE_ID = "secure_id"


@dataclass
class OtpCode(StorageRecord):
    """One-time code issued to a user"""
    user_id: str
    code: str
    expires_at: datetime
    used: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class StepUpSettings:
    """Which step-up factors a user has switched on"""
    user_id: str
    cot_enabled: bool = False
    secure_id_enabled: bool = False

    def enabled(self, kind: StepUpKind) -> bool:
        if kind == StepUpKind.COT:
            return self.cot_enabled
        return self.secure_id_enabled


def hash_secret(secret: str, salt: str) -> str:
    """Hash a PIN or step-up code with scrypt"""
    return hashlib.scrypt(
        secret.encode(),
        salt=salt.encode(),
        n=16384, r=8, p=1
    ).hex()


def generate_salt() -> str:
    return secrets.token_hex(16)


class StepUpCodePolicy(ABC):
    """Decides what happens to a step-up code after it verifies"""

    name = "abstract"

    @abstractmethod
    def after_success(self, service: 'VerificationService', user_id: str, kind: StepUpKind) -> None:
        pass


class DurableCodePolicy(StepUpCodePolicy):
    """Codes stay valid until the user changes them"""

    name = "durable"

    def after_success(self, service: 'VerificationService', user_id: str, kind: StepUpKind) -> None:
        pass


class SingleUseCodePolicy(StepUpCodePolicy):
    """A code works once; the user must configure a new one afterwards"""

    name = "single_use"

    def after_success(self, service: 'VerificationService', user_id: str, kind: StepUpKind) -> None:
        service._clear_step_up_code(user_id, kind)


def policy_from_name(name: str) -> StepUpCodePolicy:
    policies = {
        DurableCodePolicy.name: DurableCodePolicy,
        SingleUseCodePolicy.name: SingleUseCodePolicy,
    }
    if name not in policies:
        raise ValueError(f"Unknown step-up policy: {name}")
    return policies[name]()


class VerificationService(EventPublisherMixin):
    """
    PIN, OTP and step-up code verification
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        otp_ttl_seconds: int = 300,
        otp_length: int = 6,
        pin_length: int = 4,
        step_up_policy: Optional[StepUpCodePolicy] = None
    ):
        self.storage = storage
        self.audit = audit_trail
        self.otp_ttl = timedelta(seconds=otp_ttl_seconds)
        self.otp_length = otp_length
        self.pin_length = pin_length
        self.step_up_policy = step_up_policy or DurableCodePolicy()
        self.otp_table = "otp_codes"
        self.pin_table = "user_pins"
        self.step_up_table = "step_up_factors"
        self.logger = get_logger("funds_core.verification")
        self.set_event_dispatcher(event_dispatcher)

    # OTP

    def issue_otp(self, user_id: str) -> OtpCode:
        """
        Issue a fresh OTP, invalidating every unused one the user holds

        The code is handed to OTP_ISSUED subscribers (mail transport) and
        returned to the caller; it is not logged.
        """
        now = datetime.now(timezone.utc)
        otp = OtpCode(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            code="".join(secrets.choice("0123456789") for _ in range(self.otp_length)),
            expires_at=now + self.otp_ttl
        )

        with self.storage.lock_records([("otp_user", user_id)]):
            with self.storage.atomic():
                for existing in self._user_otps(user_id):
                    if not existing.used:
                        existing.used = True
                        existing.updated_at = now
                        self._save_otp(existing)
                self._save_otp(otp)

        self.audit.log_event(
            AuditEventType.OTP_ISSUED, "user", user_id,
            {"otp_id": otp.id, "expires_at": otp.expires_at}, user_id
        )
        log_action(self.logger, "info", "OTP issued", user_id=user_id, action="otp_issued")
        self.publish_event(DomainEvent.OTP_ISSUED, "user", user_id, {
            "otp_id": otp.id,
            "code": otp.code,
            "expires_at": otp.expires_at.isoformat()
        })

        return otp

    def verify_otp(self, user_id: str, code: str, now: Optional[datetime] = None) -> bool:
        """
        Consume a live OTP matching the code

        Returns:
            True exactly once per issued code; False (with no side effects)
            for wrong, used or expired codes
        """
        now = now or datetime.now(timezone.utc)
        code = (code or "").strip()
        matched: Optional[OtpCode] = None

        with self.storage.lock_records([("otp_user", user_id)]):
            with self.storage.atomic():
                candidates = [otp for otp in self._user_otps(user_id) if otp.is_live(now)]
                candidates.sort(key=lambda otp: otp.created_at, reverse=True)
                for otp in candidates:
                    if hmac.compare_digest(otp.code.encode(), code.encode()):
                        matched = otp
                        break

                if matched is not None:
                    matched.used = True
                    matched.updated_at = now
                    self._save_otp(matched)

        if matched is None:
            self.audit.log_event(AuditEventType.OTP_REJECTED, "user", user_id, {}, user_id)
            return False

        self.audit.log_event(
            AuditEventType.OTP_CONSUMED, "user", user_id, {"otp_id": matched.id}, user_id
        )
        return True

    def purge_expired_otps(self, now: Optional[datetime] = None) -> int:
        """Delete expired or used OTP records. Returns the number removed"""
        now = now or datetime.now(timezone.utc)
        removed = 0
        for data in self.storage.load_all(self.otp_table):
            otp = self._otp_from_dict(data)
            if otp.used or otp.expires_at <= now:
                if self.storage.delete(self.otp_table, otp.id):
                    removed += 1
        return removed

    # PIN

    def set_pin(self, user_id: str, pin: str) -> None:
        """
        Store a new transaction PIN, replacing any previous one

        Raises:
            ValidationError: If the PIN is not exactly pin_length digits
        """
        if not pin or len(pin) != self.pin_length or not pin.isdigit():
            raise ValidationError(f"PIN must be exactly {self.pin_length} digits")

        now = datetime.now(timezone.utc)
        existing = self.storage.load(self.pin_table, user_id)
        salt = generate_salt()
        self.storage.save(self.pin_table, user_id, {
            'id': user_id,
            'user_id': user_id,
            'pin_hash': hash_secret(pin, salt),
            'pin_salt': salt,
            'created_at': existing['created_at'] if existing else now.isoformat(),
            'updated_at': now.isoformat()
        })

        self.audit.log_event(AuditEventType.PIN_SET, "user", user_id, {"replaced": bool(existing)}, user_id)

    def has_pin(self, user_id: str) -> bool:
        return self.storage.exists(self.pin_table, user_id)

    def verify_pin(self, user_id: str, pin: str) -> bool:
        """Check a PIN against the stored hash; never consumes it"""
        record = self.storage.load(self.pin_table, user_id)
        if not record or not pin:
            ok = False
        else:
            candidate = hash_secret(pin, record['pin_salt'])
            ok = hmac.compare_digest(candidate, record['pin_hash'])

        if not ok:
            self.audit.log_event(AuditEventType.PIN_VERIFICATION_FAILED, "user", user_id, {}, user_id)
        return ok

    # Step-up codes

    def configure_step_up(self, user_id: str, kind: StepUpKind, code: str, enabled: bool = True) -> StepUpSettings:
        """
        Set the code for a step-up factor and switch it on or off

        Raises:
            ValidationError: If the code is empty or longer than 64 characters
        """
        kind = StepUpKind(kind)
        code = (code or "").strip()
        if not code or len(code) > 64:
            raise ValidationError(f"{kind.value} code must be 1-64 characters")

        salt = generate_salt()
        code_hash = hash_secret(code, salt)
        with self.storage.lock_records([self._step_up_lock_key(user_id)]):
            record = self._step_up_record(user_id)
            record[f'{kind.value}_enabled'] = enabled
            record[f'{kind.value}_code_hash'] = code_hash
            record[f'{kind.value}_code_salt'] = salt
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.step_up_table, user_id, record)

        self.audit.log_event(
            AuditEventType.STEP_UP_CONFIGURED, "user", user_id,
            {"factor": kind.value, "enabled": enabled}, user_id
        )
        return self._settings_from_record(record)

    def disable_step_up(self, user_id: str, kind: StepUpKind) -> StepUpSettings:
        kind = StepUpKind(kind)
        with self.storage.lock_records([self._step_up_lock_key(user_id)]):
            record = self._step_up_record(user_id)
            record[f'{kind.value}_enabled'] = False
            record['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.step_up_table, user_id, record)

        self.audit.log_event(
            AuditEventType.STEP_UP_CONFIGURED, "user", user_id,
            {"factor": kind.value, "enabled": False}, user_id
        )
        return self._settings_from_record(record)

    def get_step_up_settings(self, user_id: str) -> StepUpSettings:
        return self._settings_from_record(self._step_up_record(user_id))

    def verify_step_up_code(self, user_id: str, kind: StepUpKind, code: str) -> bool:
        """
        Check a COT or Secure-ID code, then apply the step-up policy

        Check and policy run under the user's step-up lock in one unit of
        work, so a single-use code verifies at most once.
        """
        kind = StepUpKind(kind)
        ok = False

        with self.storage.lock_records([self._step_up_lock_key(user_id)]):
            with self.storage.atomic():
                record = self._step_up_record(user_id)
                code_hash = record.get(f'{kind.value}_code_hash')
                salt = record.get(f'{kind.value}_code_salt')

                if code and code_hash and salt:
                    ok = hmac.compare_digest(hash_secret(code.strip(), salt), code_hash)
                if ok:
                    self.step_up_policy.after_success(self, user_id, kind)

        if not ok:
            self.audit.log_event(
                AuditEventType.STEP_UP_FAILED, "user", user_id, {"factor": kind.value}, user_id
            )
        return ok

    @staticmethod
    def _step_up_lock_key(user_id: str):
        return ("step_up_user", user_id)

    def _clear_step_up_code(self, user_id: str, kind: StepUpKind) -> None:
        record = self._step_up_record(user_id)
        record[f'{kind.value}_code_hash'] = None
        record[f'{kind.value}_code_salt'] = None
        record['updated_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.step_up_table, user_id, record)

    def _step_up_record(self, user_id: str) -> Dict:
        record = self.storage.load(self.step_up_table, user_id)
        if record:
            return record
        now = datetime.now(timezone.utc).isoformat()
        return {
            'id': user_id,
            'user_id': user_id,
            'cot_enabled': False,
            'secure_id_enabled': False,
            'created_at': now,
            'updated_at': now
        }

    @staticmethod
    def _settings_from_record(record: Dict) -> StepUpSettings:
        return StepUpSettings(
            user_id=record['user_id'],
            cot_enabled=bool(record.get('cot_enabled')),
            secure_id_enabled=bool(record.get('secure_id_enabled'))
        )

    # Storage helpers

    def _user_otps(self, user_id: str) -> List[OtpCode]:
        return [self._otp_from_dict(d) for d in self.storage.find(self.otp_table, {'user_id': user_id})]

    def _save_otp(self, otp: OtpCode) -> None:
        self.storage.save(self.otp_table, otp.id, otp.to_dict())

    @staticmethod
    def _otp_from_dict(data: Dict) -> OtpCode:
        return OtpCode(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            code=data['code'],
            expires_at=datetime.fromisoformat(data['expires_at']),
            used=bool(data['used'])
        )
