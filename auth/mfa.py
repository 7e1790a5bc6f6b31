"""
auth/mfa.py -- TOTP verification, backup codes, and MFA enrollment.

TOTP: RFC 6238 via pyotp (HMAC-SHA1, 6 digits, 30-second steps). A code is
accepted for the current step and `mfa_valid_window` steps either side.
The matched step is recorded with a compare-and-set, so a code can be used
once: a replay of the same step, or any earlier one, is refused even inside
the window.

Backup codes: generated at enrollment, shown once, stored as HMAC digests,
each consumable exactly once.

Failure messages never say which check failed. A wrong code, a replayed code
and a consumed backup code all surface as "Invalid code."

Enrollment state machine (per account):
  unenrolled --begin_setup--> pending_verification --verify_setup--> enrolled
  pending --begin_setup--> pending (fresh secret)
  enrolled/pending --disable--> unenrolled

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hmac
import logging
from datetime import datetime, timedelta
from io import BytesIO

import pyotp
import qrcode

from audit.models import EventType, Outcome, Severity
from audit.store import AuditLog
from auth import policy
from auth.models import Account, AuthErrorCode, MfaSetup, Rejected, Role
from auth.store import AccountStore
from auth.tokens import generate_backup_codes, hash_backup_code
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("qualibrite.auth.mfa")

TOTP_DIGITS = 6
# pyotp.random_base32 default: 32 base32 characters = 160 bits
SECRET_LENGTH = 32
INVALID_CODE_MESSAGE = "Invalid code."


def generate_secret() -> str:
    return pyotp.random_base32(length=SECRET_LENGTH)


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def render_qr_png(uri: str) -> str:
    """Return the otpauth URI as a base64-encoded PNG QR code."""
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(uri)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode()


def looks_like_totp(code: str) -> bool:
    return len(code) == TOTP_DIGITS and code.isdigit()


def matching_step(secret: str, code: str, at: datetime, window: int = 1) -> int | None:
    """Return the time step within +/- window whose code equals `code`, or None.

    Pure function of its arguments: no storage, no replay check.
    """
    if not looks_like_totp(code):
        return None
    totp = pyotp.TOTP(secret)
    current = totp.timecode(at)
    for step in range(current - window, current + window + 1):
        if pyotp.utils.strings_equal(code, totp.generate_otp(step)):
            return step
    return None


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class MfaVerifier:
    """Checks TOTP and backup codes against stored account state.

    Does not audit. The caller knows whether the check was a login challenge,
    a setup confirmation or a disable confirmation and records accordingly.
    """

    def __init__(self, store: AccountStore, settings: Settings, clock: Clock = utcnow) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    def verify(self, account_id: int, code: str) -> bool:
        """True if code is valid for the account's secret and not a replay."""
        code = code.strip()
        account = self._store.get_by_id(account_id)
        if account is None or not account.mfa_secret:
            return False
        step = matching_step(account.mfa_secret, code, self._clock(), self._settings.mfa_valid_window)
        if step is None:
            return False
        if account.mfa_last_used_step is not None and step <= account.mfa_last_used_step:
            return False
        return self._store.record_totp_step(account_id, step)

    def verify_backup_code(self, account_id: int, code: str) -> bool:
        """True if code matches an unused backup code; the code is consumed."""
        account = self._store.get_by_id(account_id)
        if account is None or not account.mfa_enabled or not code.strip():
            return False
        digest = hash_backup_code(code)
        matched = None
        for stored in account.mfa_backup_codes:
            if hmac.compare_digest(stored, digest):
                matched = stored
        if matched is None:
            return False
        return self._store.consume_backup_code(account_id, matched)

    def remaining_backup_codes(self, account_id: int) -> int:
        account = self._store.get_by_id(account_id)
        return len(account.mfa_backup_codes) if account else 0


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------

_ALREADY_ENABLED = "MFA is already enabled for this account."
_NOT_FOUND = "Account not found."


class MfaEnrollment:
    def __init__(
        self,
        store: AccountStore,
        verifier: MfaVerifier,
        audit: AuditLog,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._audit = audit
        self._settings = settings
        self._clock = clock

    def setup_required(self, account: Account) -> bool:
        """MFA is mandatory for the account, not yet enabled, and any exemption has lapsed."""
        if not account.mfa_required or account.mfa_enabled:
            return False
        return account.mfa_exempt_until is None or self._clock() >= account.mfa_exempt_until

    def exemption_available(self, account: Account) -> bool:
        """The one-time deferral can still be requested by this account."""
        allowed_roles = {Role(r) for r in self._settings.mfa_exemption_roles}
        return (
            account.mfa_required
            and not account.mfa_enabled
            and not account.mfa_exemption_used
            and not account.is_superadmin
            and account.role in allowed_roles
        )

    def begin_setup(self, account_id: int, ip_address: str | None = None) -> MfaSetup | Rejected:
        """Generate and persist a pending secret. Calling again replaces an unconfirmed secret."""
        event = EventType.MFA_SETUP_STARTED
        account = self._store.get_by_id(account_id)
        if account is None:
            return self._refuse(event, AuthErrorCode.NOT_FOUND, _NOT_FOUND, account_id, ip_address)
        secret = generate_secret()
        if account.mfa_enabled or not self._store.set_pending_mfa_secret(account_id, secret):
            return self._refuse(event, AuthErrorCode.MFA_ALREADY_ENABLED, _ALREADY_ENABLED, account_id, ip_address)

        uri = provisioning_uri(secret, account.email, self._settings.mfa_issuer)
        self._audit.record(event, "MFA setup started", outcome=Outcome.SUCCESS, user_id=account_id, ip_address=ip_address)
        return MfaSetup(secret=secret, provisioning_uri=uri, qr_code_png=render_qr_png(uri))

    def verify_setup(self, account_id: int, code: str, ip_address: str | None = None) -> list[str] | Rejected:
        """Confirm the pending secret with a first code; returns cleartext backup codes once."""
        event = EventType.MFA_ENABLED
        account = self._store.get_by_id(account_id)
        if account is None:
            return self._refuse(event, AuthErrorCode.NOT_FOUND, _NOT_FOUND, account_id, ip_address)
        if account.mfa_enabled:
            return self._refuse(event, AuthErrorCode.MFA_ALREADY_ENABLED, _ALREADY_ENABLED, account_id, ip_address)
        if not account.mfa_secret:
            return self._refuse(
                event, AuthErrorCode.MFA_SETUP_NOT_STARTED, "Start MFA setup before verifying a code.", account_id, ip_address
            )

        codes = generate_backup_codes(self._settings.mfa_backup_code_count)
        # enable_mfa compares the secret, so a setup restarted after this read fails here
        confirmed = self._verifier.verify(account_id, code) and self._store.enable_mfa(
            account_id, account.mfa_secret, [hash_backup_code(c) for c in codes]
        )
        if not confirmed:
            self._audit.record(
                EventType.MFA_VERIFY_FAILURE,
                "Invalid code during MFA setup",
                outcome=Outcome.FAILURE,
                user_id=account_id,
                ip_address=ip_address,
                details={"stage": "setup"},
            )
            return Rejected(AuthErrorCode.INVALID_MFA_CODE, INVALID_CODE_MESSAGE)

        logger.info("MFA enabled for account %s", account_id)
        self._audit.record(
            event,
            "MFA enabled",
            outcome=Outcome.SUCCESS,
            user_id=account_id,
            ip_address=ip_address,
            details={"backup_codes_issued": len(codes)},
        )
        return codes

    def disable(
        self,
        account_id: int,
        acting_user_id: int | None,
        ip_address: str | None = None,
        *,
        code: str | None = None,
    ) -> Account | Rejected:
        """Clear secret and backup codes.

        Owner disable: acting_user_id == account_id and a current TOTP `code`.
        Refused while MFA is mandatory for the account. The code is checked
        last, so a refused request does not burn the caller's time step.

        Anything else is an administrative reset and goes through
        policy.authorize_target(), which refuses a self-target. acting_user_id
        None is the operator console.
        """
        event = EventType.MFA_DISABLED
        own = acting_user_id is not None and acting_user_id == account_id and code is not None
        if own:
            target = self._store.get_by_id(account_id)
            if target is None:
                return self._refuse(event, AuthErrorCode.NOT_FOUND, _NOT_FOUND, account_id, ip_address)
            if target.mfa_required:
                return self._refuse(
                    event,
                    AuthErrorCode.MFA_REQUIRED,
                    "MFA is required for this account and cannot be disabled.",
                    account_id,
                    ip_address,
                    outcome=Outcome.DENIED,
                )
        else:
            target, rejected = policy.authorize_target(
                self._store, self._audit, event, account_id, acting_user_id, ip_address
            )
            if rejected is not None:
                return rejected

        if not target.mfa_enabled and not target.mfa_secret:
            return self._refuse(
                event,
                AuthErrorCode.MFA_NOT_ENABLED,
                "MFA is not enabled for this account.",
                acting_user_id,
                ip_address,
                target_user_id=None if own else account_id,
            )

        if own and not self._verifier.verify(account_id, code):
            self._audit.record(
                EventType.MFA_VERIFY_FAILURE,
                "Invalid code when disabling MFA",
                outcome=Outcome.FAILURE,
                user_id=account_id,
                ip_address=ip_address,
                details={"stage": "disable"},
            )
            return Rejected(AuthErrorCode.INVALID_MFA_CODE, INVALID_CODE_MESSAGE)

        self._store.clear_mfa(account_id)
        logger.warning("MFA cleared for account %s (%s)", account_id, "owner" if own else "forced")
        self._audit.record(
            event,
            "MFA disabled by account owner" if own else f"MFA reset for {target.email} by administrator",
            outcome=Outcome.SUCCESS,
            severity=Severity.MEDIUM if own else Severity.HIGH,
            user_id=acting_user_id,
            target_user_id=None if own else account_id,
            ip_address=ip_address,
            details={"forced": not own, "was_enabled": target.mfa_enabled},
        )
        return self._store.get_by_id(account_id)

    def set_requirement(
        self, account_id: int, required: bool, acting_admin_id: int | None, ip_address: str | None = None
    ) -> Account | Rejected:
        """Make MFA mandatory (or optional) for an account. Resets any exemption."""
        target, rejected = policy.authorize_target(
            self._store,
            self._audit,
            EventType.MFA_REQUIREMENT_CHANGED,
            account_id,
            acting_admin_id,
            ip_address,
            check=policy.can_set_mfa_requirement,
        )
        if rejected is not None:
            return rejected
        self._store.set_mfa_required(account_id, required)
        self._audit.record(
            EventType.MFA_REQUIREMENT_CHANGED,
            f"MFA {'required' if required else 'made optional'} for {target.email}",
            outcome=Outcome.SUCCESS,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
            details={"previous": target.mfa_required, "required": required},
        )
        return self._store.get_by_id(account_id)

    def request_exemption(self, account_id: int, ip_address: str | None = None) -> datetime | Rejected:
        """Grant the one-time "remind me later" exemption; returns when it ends."""
        event = EventType.MFA_EXEMPTION_REQUESTED
        account = self._store.get_by_id(account_id)
        if account is None:
            return self._refuse(event, AuthErrorCode.NOT_FOUND, _NOT_FOUND, account_id, ip_address)

        allowed_roles = {Role(r) for r in self._settings.mfa_exemption_roles}
        until = self._clock() + timedelta(days=self._settings.mfa_exemption_days)
        if not account.mfa_required or account.mfa_enabled:
            reason = "MFA setup is not pending for this account."
        elif account.role not in allowed_roles or account.is_superadmin:
            reason = "Your role must set up MFA now."
        elif account.mfa_exemption_used or not self._store.grant_mfa_exemption(account_id, until):
            reason = "The MFA exemption has already been used."
        else:
            reason = None
        if reason is not None:
            return self._refuse(
                event, AuthErrorCode.EXEMPTION_NOT_ALLOWED, reason, account_id, ip_address, outcome=Outcome.DENIED
            )

        self._audit.record(
            event,
            f"MFA setup deferred for {self._settings.mfa_exemption_days} days",
            outcome=Outcome.SUCCESS,
            user_id=account_id,
            ip_address=ip_address,
            details={"exempt_until": until.isoformat()},
        )
        return until

    def _refuse(
        self,
        event_type: EventType,
        code: AuthErrorCode,
        message: str,
        user_id: int | None,
        ip_address: str | None,
        *,
        target_user_id: int | None = None,
        outcome: Outcome = Outcome.FAILURE,
    ) -> Rejected:
        self._audit.record(
            event_type,
            f"Refused: {message}",
            outcome=outcome,
            user_id=user_id,
            target_user_id=target_user_id,
            ip_address=ip_address,
            details={"reason": code.value},
        )
        return Rejected(code, message)
