"""
Test suite for PIN, OTP and step-up code verification
"""

import json
import pytest
import threading
from datetime import timedelta

from funds_core.audit import AuditTrail, AuditEventType
from funds_core.errors import ValidationError
from funds_core.events import EventDispatcher, DomainEvent
from funds_core.storage import InMemoryStorage
from funds_core.verification import (
    VerificationService, StepUpKind, SingleUseCodePolicy, DurableCodePolicy, policy_from_name
)


class TestPin:
    """Transaction PIN handling"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.verification = VerificationService(self.storage, self.audit_trail)

    def test_set_and_verify_pin(self):
        assert not self.verification.has_pin("user-1")
        self.verification.set_pin("user-1", "1234")

        assert self.verification.has_pin("user-1")
        assert self.verification.verify_pin("user-1", "1234")
        # Reusable
        assert self.verification.verify_pin("user-1", "1234")
        assert not self.verification.verify_pin("user-1", "4321")
        assert not self.verification.verify_pin("user-1", "")

    def test_pin_is_stored_hashed(self):
        self.verification.set_pin("user-1", "1234")
        record = self.storage.load("user_pins", "user-1")

        assert "1234" not in json.dumps(record)
        assert record["pin_hash"] and record["pin_salt"]

    def test_pin_must_be_four_digits(self):
        for pin in ("123", "12345", "12a4", "", None):
            with pytest.raises(ValidationError):
                self.verification.set_pin("user-1", pin)
        assert not self.verification.has_pin("user-1")

    def test_replacing_pin(self):
        self.verification.set_pin("user-1", "1234")
        self.verification.set_pin("user-1", "9876")

        assert not self.verification.verify_pin("user-1", "1234")
        assert self.verification.verify_pin("user-1", "9876")

    def test_user_without_pin_fails_verification(self):
        assert not self.verification.verify_pin("nobody", "1234")
        failures = self.audit_trail.get_events_by_type(AuditEventType.PIN_VERIFICATION_FAILED)
        assert len(failures) == 1


class TestOtp:
    """One-time codes"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.events = EventDispatcher()
        self.issued = []
        self.events.subscribe(DomainEvent.OTP_ISSUED, self.issued.append)
        self.verification = VerificationService(self.storage, self.audit_trail, self.events)

    def test_otp_is_single_use(self):
        otp = self.verification.issue_otp("user-1")

        assert len(otp.code) == 6 and otp.code.isdigit()
        assert self.verification.verify_otp("user-1", otp.code)
        assert not self.verification.verify_otp("user-1", otp.code)

    def test_new_otp_invalidates_previous(self):
        first = self.verification.issue_otp("user-1")
        second = self.verification.issue_otp("user-1")
        while second.code == first.code:
            second = self.verification.issue_otp("user-1")

        assert not self.verification.verify_otp("user-1", first.code)
        assert self.verification.verify_otp("user-1", second.code)

    def test_expired_otp_is_rejected(self):
        otp = self.verification.issue_otp("user-1")
        later = otp.expires_at + timedelta(seconds=1)

        assert not self.verification.verify_otp("user-1", otp.code, now=later)
        # Still usable inside its window
        assert self.verification.verify_otp("user-1", otp.code, now=otp.expires_at - timedelta(seconds=1))

    def test_wrong_code_has_no_side_effects(self):
        otp = self.verification.issue_otp("user-1")
        wrong = "000000" if otp.code != "000000" else "111111"

        assert not self.verification.verify_otp("user-1", wrong)
        assert self.verification.verify_otp("user-1", otp.code)

    def test_code_of_another_user_fails(self):
        otp = self.verification.issue_otp("user-1")

        assert not self.verification.verify_otp("user-2", otp.code)
        assert self.verification.verify_otp("user-1", otp.code)

    def test_concurrent_verification_succeeds_once(self):
        otp = self.verification.issue_otp("user-1")
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(10)

        def verify():
            barrier.wait()
            ok = self.verification.verify_otp("user-1", otp.code)
            with results_lock:
                results.append(ok)

        threads = [threading.Thread(target=verify) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 9

    def test_issue_publishes_code_but_never_audits_it(self):
        otp = self.verification.issue_otp("user-1")

        assert self.issued[0].data["code"] == otp.code
        for event in self.audit_trail.get_all_events():
            assert "code" not in event.metadata
            assert otp.code not in event.metadata.values()

    def test_purge_expired_otps(self):
        used = self.verification.issue_otp("user-1")
        self.verification.verify_otp("user-1", used.code)
        live = self.verification.issue_otp("user-2")

        assert self.verification.purge_expired_otps() == 1
        assert self.storage.count("otp_codes") == 1

        assert self.verification.purge_expired_otps(now=live.expires_at) == 1
        assert self.storage.count("otp_codes") == 0


class TestStepUpCodes:
    """COT and Secure-ID codes"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.verification = VerificationService(self.storage, self.audit_trail)

    def test_configure_and_verify(self):
        settings = self.verification.configure_step_up("user-1", StepUpKind.COT, "COT-777")

        assert settings.cot_enabled
        assert not settings.secure_id_enabled
        assert self.verification.verify_step_up_code("user-1", StepUpKind.COT, "COT-777")
        assert not self.verification.verify_step_up_code("user-1", StepUpKind.COT, "COT-778")
        assert not self.verification.verify_step_up_code("user-1", StepUpKind.SECURE_ID, "COT-777")

    def test_durable_codes_are_reusable(self):
        self.verification.configure_step_up("user-1", "secure_id", "SID-1")

        assert self.verification.verify_step_up_code("user-1", StepUpKind.SECURE_ID, "SID-1")
        assert self.verification.verify_step_up_code("user-1", StepUpKind.SECURE_ID, "SID-1")

    def test_single_use_policy_consumes_code(self):
        verification = VerificationService(
            self.storage, self.audit_trail, step_up_policy=SingleUseCodePolicy()
        )
        verification.configure_step_up("user-1", StepUpKind.COT, "COT-1")

        assert verification.verify_step_up_code("user-1", StepUpKind.COT, "COT-1")
        assert not verification.verify_step_up_code("user-1", StepUpKind.COT, "COT-1")

    def test_single_use_code_survives_racing_submissions_once(self):
        verification = VerificationService(
            self.storage, self.audit_trail, step_up_policy=SingleUseCodePolicy()
        )
        verification.configure_step_up("user-1", StepUpKind.COT, "COT-1")
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(6)

        def verify():
            barrier.wait()
            ok = verification.verify_step_up_code("user-1", StepUpKind.COT, "COT-1")
            with results_lock:
                results.append(ok)

        threads = [threading.Thread(target=verify) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 5
        assert len(self.audit_trail.get_events_by_type(AuditEventType.STEP_UP_FAILED)) == 5

    def test_disable_step_up(self):
        self.verification.configure_step_up("user-1", StepUpKind.COT, "COT-1")
        settings = self.verification.disable_step_up("user-1", StepUpKind.COT)

        assert not settings.cot_enabled
        assert not self.verification.get_step_up_settings("user-1").cot_enabled

    def test_code_length_is_checked(self):
        with pytest.raises(ValidationError):
            self.verification.configure_step_up("user-1", StepUpKind.COT, "")
        with pytest.raises(ValidationError):
            self.verification.configure_step_up("user-1", StepUpKind.COT, "x" * 65)

    def test_codes_never_reach_storage_or_audit_in_plaintext(self):
        self.verification.configure_step_up("user-1", StepUpKind.COT, "VERY-SECRET")
        self.verification.verify_step_up_code("user-1", StepUpKind.COT, "WRONG-SECRET")

        assert "VERY-SECRET" not in json.dumps(self.storage.load("step_up_factors", "user-1"))
        for event in self.audit_trail.get_all_events():
            dumped = json.dumps(event.metadata)
            assert "VERY-SECRET" not in dumped
            assert "WRONG-SECRET" not in dumped

    def test_policy_from_name(self):
        assert isinstance(policy_from_name("durable"), DurableCodePolicy)
        assert isinstance(policy_from_name("single_use"), SingleUseCodePolicy)
        with pytest.raises(ValueError):
            policy_from_name("sometimes")
