"""
tests/test_mfa.py -- Unit tests for TOTP verification, backup codes and enrollment.

Covers:
  - RFC 6238 window: current step and one step either side, nothing further
  - replay refusal for the same or an earlier step
  - backup codes: single use, hashed at rest, normalized input
  - enrollment state machine: begin -> verify -> enabled; restart; disable
  - requirement and one-time exemption rules
"""

from __future__ import annotations

import base64
from datetime import timedelta

import pyotp

from audit.models import EventType, Outcome, Severity
from auth.mfa import matching_step
from auth.models import AuthErrorCode, MfaSetup, MfaState, Rejected, Role
from tests.conftest import add_account, enroll_mfa, totp_now


class TestMatchingStep:
    SECRET = pyotp.random_base32()

    def test_current_step_matches(self, clock) -> None:
        totp = pyotp.TOTP(self.SECRET)
        assert matching_step(self.SECRET, totp.at(clock()), clock()) == totp.timecode(clock())

    def test_adjacent_steps_within_window(self, clock) -> None:
        """Codes 30s early or late are accepted with window=1."""
        totp = pyotp.TOTP(self.SECRET)
        now = clock()
        previous = totp.at(now.timestamp() - 30)
        following = totp.at(now.timestamp() + 30)
        assert matching_step(self.SECRET, previous, now) == totp.timecode(now) - 1
        assert matching_step(self.SECRET, following, now) == totp.timecode(now) + 1

    def test_two_steps_away_rejected(self, clock) -> None:
        totp = pyotp.TOTP(self.SECRET)
        now = clock()
        stale = totp.at(now.timestamp() - 60)
        if stale not in {totp.at(now), totp.at(now.timestamp() - 30), totp.at(now.timestamp() + 30)}:
            assert matching_step(self.SECRET, stale, now) is None

    def test_non_numeric_rejected(self, clock) -> None:
        assert matching_step(self.SECRET, "12ab56", clock()) is None
        assert matching_step(self.SECRET, "1234567", clock()) is None


class TestVerifier:
    def test_valid_code_accepted_once(self, services, clock) -> None:
        """The same code cannot be used twice, even inside its window."""
        acct = add_account(services, "m1@example.com")
        enroll_mfa(services, clock, acct.id)
        code = totp_now(services, clock, acct.id)
        assert services.mfa_verifier.verify(acct.id, code)
        assert not services.mfa_verifier.verify(acct.id, code)

    def test_earlier_step_refused_after_later_one(self, services, clock) -> None:
        """A code for step N-1 is a replay once step N has been used."""
        acct = add_account(services, "m2@example.com")
        enroll_mfa(services, clock, acct.id)
        secret = services.account_store.get_by_id(acct.id).mfa_secret
        earlier = pyotp.TOTP(secret).at(clock().timestamp() - 30)
        assert services.mfa_verifier.verify(acct.id, totp_now(services, clock, acct.id))
        assert not services.mfa_verifier.verify(acct.id, earlier)

    def test_wrong_code_refused(self, services, clock) -> None:
        acct = add_account(services, "m3@example.com")
        enroll_mfa(services, clock, acct.id)
        code = totp_now(services, clock, acct.id)
        wrong = f"{(int(code) + 1) % 1_000_000:06d}"
        assert not services.mfa_verifier.verify(acct.id, wrong)

    def test_no_secret_refused(self, services) -> None:
        acct = add_account(services, "m4@example.com")
        assert not services.mfa_verifier.verify(acct.id, "123456")


class TestBackupCodes:
    def test_codes_shape_and_storage(self, services, clock) -> None:
        """Ten XXXX-XXXX codes are returned; only digests are stored."""
        acct = add_account(services, "b1@example.com")
        codes = enroll_mfa(services, clock, acct.id)
        assert len(codes) == 10
        assert all(len(c) == 9 and c[4] == "-" for c in codes)
        stored = services.account_store.get_by_id(acct.id).mfa_backup_codes
        assert len(stored) == 10
        assert not set(codes) & set(stored)

    def test_backup_code_single_use(self, services, clock) -> None:
        acct = add_account(services, "b2@example.com")
        codes = enroll_mfa(services, clock, acct.id)
        assert services.mfa_verifier.verify_backup_code(acct.id, codes[0])
        assert not services.mfa_verifier.verify_backup_code(acct.id, codes[0])
        assert services.mfa_verifier.remaining_backup_codes(acct.id) == 9

    def test_backup_code_input_normalized(self, services, clock) -> None:
        """Lower case, missing dash and surrounding spaces are tolerated."""
        acct = add_account(services, "b3@example.com")
        codes = enroll_mfa(services, clock, acct.id)
        sloppy = " " + codes[1].replace("-", "").lower() + " "
        assert services.mfa_verifier.verify_backup_code(acct.id, sloppy)

    def test_unknown_backup_code(self, services, clock) -> None:
        acct = add_account(services, "b4@example.com")
        enroll_mfa(services, clock, acct.id)
        assert not services.mfa_verifier.verify_backup_code(acct.id, "ZZZZ-ZZZZ")


class TestEnrollment:
    def test_begin_setup_returns_secret_uri_and_qr(self, services) -> None:
        acct = add_account(services, "e1@example.com")
        setup = services.mfa_enrollment.begin_setup(acct.id)
        assert isinstance(setup, MfaSetup)
        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert "e1%40example.com" in setup.provisioning_uri or "e1@example.com" in setup.provisioning_uri
        assert base64.b64decode(setup.qr_code_png).startswith(b"\x89PNG")
        stored = services.account_store.get_by_id(acct.id)
        assert stored.mfa_secret == setup.secret
        assert not stored.mfa_enabled
        assert stored.mfa_state is MfaState.PENDING_VERIFICATION
        assert services.audit.query(event_type=EventType.MFA_SETUP_STARTED)

    def test_restart_replaces_pending_secret(self, services) -> None:
        acct = add_account(services, "e2@example.com")
        first = services.mfa_enrollment.begin_setup(acct.id)
        second = services.mfa_enrollment.begin_setup(acct.id)
        assert first.secret != second.secret
        assert services.account_store.get_by_id(acct.id).mfa_secret == second.secret

    def test_verify_setup_wrong_code(self, services, clock) -> None:
        """A wrong first code leaves the enrollment pending and is audited."""
        acct = add_account(services, "e3@example.com")
        setup = services.mfa_enrollment.begin_setup(acct.id)
        totp = pyotp.TOTP(setup.secret)
        now = clock().timestamp()
        window = {totp.at(now + offset) for offset in (-30, 0, 30)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in window)

        result = services.mfa_enrollment.verify_setup(acct.id, wrong)
        assert isinstance(result, Rejected)
        assert result.code is AuthErrorCode.INVALID_MFA_CODE
        assert result.message == "Invalid code."
        assert not services.account_store.get_by_id(acct.id).mfa_enabled
        failure = services.audit.query(event_type=EventType.MFA_VERIFY_FAILURE)[0]
        assert failure.details["stage"] == "setup"

    def test_verify_setup_enables(self, services, clock) -> None:
        acct = add_account(services, "e4@example.com")
        enroll_mfa(services, clock, acct.id)
        assert services.account_store.get_by_id(acct.id).mfa_enabled
        enabled = services.audit.query(event_type=EventType.MFA_ENABLED)
        assert enabled[0].outcome is Outcome.SUCCESS
        assert enabled[0].details["backup_codes_issued"] == 10

    def test_verify_without_setup(self, services) -> None:
        acct = add_account(services, "e5@example.com")
        result = services.mfa_enrollment.verify_setup(acct.id, "123456")
        assert result.code is AuthErrorCode.MFA_SETUP_NOT_STARTED

    def test_setup_refused_when_enabled(self, services, clock) -> None:
        acct = add_account(services, "e6@example.com")
        enroll_mfa(services, clock, acct.id)
        result = services.mfa_enrollment.begin_setup(acct.id)
        assert result.code is AuthErrorCode.MFA_ALREADY_ENABLED

    def test_owner_disable(self, services, clock) -> None:
        acct = add_account(services, "e7@example.com")
        enroll_mfa(services, clock, acct.id)
        code = totp_now(services, clock, acct.id)
        result = services.mfa_enrollment.disable(acct.id, acct.id, code=code)
        assert not result.mfa_enabled
        assert result.mfa_secret is None
        assert result.mfa_backup_codes == ()
        event = services.audit.query(event_type=EventType.MFA_DISABLED)[0]
        assert event.severity is Severity.MEDIUM

    def test_owner_disable_needs_valid_code(self, services, clock) -> None:
        acct = add_account(services, "e7b@example.com")
        enroll_mfa(services, clock, acct.id)
        result = services.mfa_enrollment.disable(acct.id, acct.id, code="ABCD-0000")
        assert result.code is AuthErrorCode.INVALID_MFA_CODE
        assert services.account_store.get_by_id(acct.id).mfa_enabled
        failure = services.audit.query(event_type=EventType.MFA_VERIFY_FAILURE)[0]
        assert failure.details == {"stage": "disable"}

    def test_owner_cannot_disable_required_mfa(self, services, clock) -> None:
        """The refusal comes before the code check, so the code stays usable."""
        acct = add_account(services, "e8@example.com", Role.ADMIN, mfa_required=True)
        enroll_mfa(services, clock, acct.id)
        code = totp_now(services, clock, acct.id)
        result = services.mfa_enrollment.disable(acct.id, acct.id, code=code)
        assert result.code is AuthErrorCode.MFA_REQUIRED
        assert services.account_store.get_by_id(acct.id).mfa_enabled
        assert services.mfa_verifier.verify(acct.id, code)

    def test_operator_cannot_reset_own_mfa(self, services, clock) -> None:
        """Without a code, acting on your own account is an administrative reset and is refused."""
        support = add_account(services, "e8b@example.com", Role.IT_SUPPORT)
        enroll_mfa(services, clock, support.id)
        result = services.mfa_enrollment.disable(support.id, support.id)
        assert result.code is AuthErrorCode.UNAUTHORIZED
        assert services.account_store.get_by_id(support.id).mfa_enabled
        denied = services.audit.query(event_type=EventType.MFA_DISABLED)[0]
        assert denied.outcome is Outcome.DENIED

    def test_admin_reset_is_high_severity(self, services, clock) -> None:
        admin = add_account(services, "admin@example.com", Role.ADMIN)
        acct = add_account(services, "e9@example.com")
        enroll_mfa(services, clock, acct.id)
        result = services.mfa_enrollment.disable(acct.id, acting_user_id=admin.id)
        assert not result.mfa_enabled
        event = services.audit.query(event_type=EventType.MFA_DISABLED)[0]
        assert event.severity is Severity.HIGH
        assert event.user_id == admin.id
        assert event.target_user_id == acct.id

    def test_disable_when_not_enrolled(self, services) -> None:
        acct = add_account(services, "e10@example.com")
        result = services.mfa_enrollment.disable(acct.id, acct.id, code="123456")
        assert result.code is AuthErrorCode.MFA_NOT_ENABLED
        assert services.audit.query(event_type=EventType.MFA_VERIFY_FAILURE) == []


class TestRequirementAndExemption:
    def test_setup_required_when_mandatory(self, services) -> None:
        acct = add_account(services, "r1@example.com", mfa_required=True)
        assert services.mfa_enrollment.setup_required(acct)

    def test_exemption_defers_setup_once(self, services, clock) -> None:
        """A patient may defer once for seven days; the second request is refused."""
        acct = add_account(services, "r2@example.com", mfa_required=True)
        until = services.mfa_enrollment.request_exemption(acct.id)
        assert until == clock() + timedelta(days=7)
        stored = services.account_store.get_by_id(acct.id)
        assert stored.mfa_exemption_used
        assert not services.mfa_enrollment.setup_required(stored)
        assert not services.mfa_enrollment.exemption_available(stored)

        again = services.mfa_enrollment.request_exemption(acct.id)
        assert again.code is AuthErrorCode.EXEMPTION_NOT_ALLOWED

        clock.advance(days=7, seconds=1)
        assert services.mfa_enrollment.setup_required(services.account_store.get_by_id(acct.id))

    def test_exemption_refused_for_staff(self, services) -> None:
        admin = add_account(services, "r3@example.com", Role.ADMIN, mfa_required=True)
        result = services.mfa_enrollment.request_exemption(admin.id)
        assert result.code is AuthErrorCode.EXEMPTION_NOT_ALLOWED

    def test_set_requirement_by_admin(self, services) -> None:
        admin = add_account(services, "r4@example.com", Role.ADMIN)
        acct = add_account(services, "r5@example.com")
        result = services.mfa_enrollment.set_requirement(acct.id, True, admin.id)
        assert result.mfa_required
        event = services.audit.query(event_type=EventType.MFA_REQUIREMENT_CHANGED)[0]
        assert event.details == {"previous": False, "required": True}

    def test_set_requirement_refused_for_it_support(self, services) -> None:
        support = add_account(services, "r6@example.com", Role.IT_SUPPORT)
        acct = add_account(services, "r7@example.com")
        result = services.mfa_enrollment.set_requirement(acct.id, True, support.id)
        assert result.code is AuthErrorCode.UNAUTHORIZED
