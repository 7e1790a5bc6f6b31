"""
auth/authenticator.py -- Email/password login with lockout and MFA challenge.

authenticate() branches, in order:

  1. unknown or inactive email   bcrypt against DUMMY_HASH, InvalidCredentials
  2. account locked              AccountLocked, password hash never checked
  3. wrong password              counter +1 (may lock), InvalidCredentials
  4. MFA enrolled                ChallengeRequired with a pending reference
  5. otherwise                   AuthSuccess with a session token

complete_mfa_challenge() finishes branch 4 with a TOTP code or a backup code.
refresh_session() reissues a live session under the current active key.

Audit contract: each call records exactly one LOGIN_SUCCESS, LOGIN_FAILURE or
MFA_VERIFY_FAILURE event describing the outcome. State transitions caused
along the way are recorded by the component that made them (ACCOUNT_LOCKED
by the lockout engine when the threshold is crossed, an automatic
ACCOUNT_UNLOCKED when an expired lock is cleared).

Unknown email, inactive account and wrong password all return the same
InvalidCredentials message.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from audit.models import EventType, Outcome, Severity
from audit.store import AuditLog
from auth.keys import SigningKeyManager
from auth.lockout import LockoutPolicyEngine
from auth.mfa import INVALID_CODE_MESSAGE, MfaEnrollment, MfaVerifier, looks_like_totp
from auth.models import Account, AuthErrorCode, AuthSuccess, ChallengeRequired, Rejected, TokenClaims
from auth.store import AccountStore, normalize_email
from auth.tokens import DUMMY_HASH, verify_password
from core.config import Settings

logger = logging.getLogger("qualibrite.auth")

_BAD_CREDENTIALS = "Invalid email or password."
_LOCKED = "Account is temporarily locked. Try again later or contact an administrator."
_CHALLENGE_EXPIRED = "Your verification session has expired. Please sign in again."

MFA_PENDING_TOKEN = "mfa_pending"

LoginResult = AuthSuccess | ChallengeRequired | Rejected


class CredentialAuthenticator:
    def __init__(
        self,
        store: AccountStore,
        lockout: LockoutPolicyEngine,
        verifier: MfaVerifier,
        enrollment: MfaEnrollment,
        keys: SigningKeyManager,
        audit: AuditLog,
        settings: Settings,
    ) -> None:
        self._store = store
        self._lockout = lockout
        self._verifier = verifier
        self._enrollment = enrollment
        self._keys = keys
        self._audit = audit
        self._settings = settings

    # ------------------------------------------------------------------
    # Password step
    # ------------------------------------------------------------------

    def authenticate(
        self, email: str, password: str, *, remember_me: bool = False, ip_address: str | None = None
    ) -> LoginResult:
        """Check credentials. Infrastructure errors are audited and re-raised."""
        account: Account | None = None
        try:
            if not email or not password:
                self._login_failure("Login failed: missing email or password", None, ip_address)
                return Rejected(AuthErrorCode.INVALID_CREDENTIALS, _BAD_CREDENTIALS)

            account = self._store.get_by_email(email)
            if account is None or not account.is_active:
                # Equalize timing -- do NOT return before running bcrypt
                verify_password(password, DUMMY_HASH)
                self._login_failure(
                    "Login failed: unknown or inactive account",
                    account.id if account else None,
                    ip_address,
                    details={"email": normalize_email(email), "reason": "unknown_or_inactive"},
                )
                return Rejected(AuthErrorCode.INVALID_CREDENTIALS, _BAD_CREDENTIALS)

            if self._lockout.is_locked(account.id):
                self._login_failure(
                    "Login rejected: account is locked",
                    account.id,
                    ip_address,
                    outcome=Outcome.DENIED,
                    severity=Severity.MEDIUM,
                    details={"reason": "account_locked"},
                )
                return Rejected(AuthErrorCode.ACCOUNT_LOCKED, _LOCKED)

            if not verify_password(password, account.password_hash):
                update = self._lockout.record_failure(account.id, ip_address)
                self._login_failure(
                    "Login failed: invalid password",
                    account.id,
                    ip_address,
                    details={
                        "reason": "invalid_password",
                        "failed_attempts": update.attempts if update else None,
                        "locked": update.locked if update else False,
                    },
                )
                return Rejected(AuthErrorCode.INVALID_CREDENTIALS, _BAD_CREDENTIALS)

            self._lockout.record_success(account.id)
            if account.mfa_enabled:
                pending_ref = self._keys.issue_token(
                    account.id,
                    account.role,
                    {"remember_me": remember_me},
                    token_type=MFA_PENDING_TOKEN,
                    expires_in=self._settings.pending_mfa_expire_seconds,
                )
                self._audit.record(
                    EventType.LOGIN_SUCCESS,
                    "Password verified; MFA challenge pending",
                    outcome=Outcome.WARNING,
                    user_id=account.id,
                    ip_address=ip_address,
                    details={"stage": "password", "mfa_pending": True},
                )
                return ChallengeRequired(account.id, pending_ref, self._settings.pending_mfa_expire_seconds)

            return self._issue_session(account, remember_me, ip_address, method="password")
        except SQLAlchemyError as exc:
            self._system_error("authenticate", account, ip_address, exc)
            raise

    # ------------------------------------------------------------------
    # MFA step
    # ------------------------------------------------------------------

    def complete_mfa_challenge(self, pending_ref: str, code: str, ip_address: str | None = None) -> LoginResult:
        """Finish a login with a 6-digit TOTP code or a backup code."""
        account: Account | None = None
        try:
            claims = self._keys.validate_token(pending_ref or "", token_type=MFA_PENDING_TOKEN)
            if isinstance(claims, Rejected):
                self._mfa_failure(
                    "MFA challenge reference invalid or expired",
                    None,
                    ip_address,
                    details={"reason": claims.code.value},
                )
                return Rejected(AuthErrorCode.TOKEN_INVALID, _CHALLENGE_EXPIRED)

            account = self._store.get_by_id(claims.account_id)
            if account is None or not account.is_active or not account.mfa_enabled:
                self._mfa_failure(
                    "MFA challenge for an account that can no longer complete it",
                    claims.account_id,
                    ip_address,
                    details={"reason": "account_state_changed"},
                )
                return Rejected(AuthErrorCode.TOKEN_INVALID, _CHALLENGE_EXPIRED)

            if self._lockout.is_locked(account.id):
                self._login_failure(
                    "Login rejected at MFA step: account is locked",
                    account.id,
                    ip_address,
                    outcome=Outcome.DENIED,
                    severity=Severity.MEDIUM,
                    details={"reason": "account_locked", "stage": "mfa"},
                )
                return Rejected(AuthErrorCode.ACCOUNT_LOCKED, _LOCKED)

            code = (code or "").strip()
            if looks_like_totp(code):
                method, failure = "totp", AuthErrorCode.INVALID_MFA_CODE
                accepted = self._verifier.verify(account.id, code)
            else:
                method, failure = "backup_code", AuthErrorCode.INVALID_BACKUP_CODE
                accepted = self._verifier.verify_backup_code(account.id, code)
            if not accepted:
                self._mfa_failure(
                    "Invalid MFA code at login", account.id, ip_address, details={"method": method, "stage": "login"}
                )
                return Rejected(failure, INVALID_CODE_MESSAGE)

            remember_me = bool(claims.extra.get("remember_me", False))
            return self._issue_session(account, remember_me, ip_address, method=method)
        except SQLAlchemyError as exc:
            self._system_error("complete_mfa_challenge", account, ip_address, exc)
            raise

    def refresh_session(self, account: Account, claims: TokenClaims, ip_address: str | None = None) -> AuthSuccess:
        """Reissue a session token from a valid one, under the current active key.

        The new token keeps the lifetime the session was granted at login, so
        a remember-me session stays a remember-me session. The caller has
        already validated `claims` and re-read `account`.
        """
        lifetime = int((claims.expires_at - claims.issued_at).total_seconds())
        token = self._keys.issue_token(account.id, account.role, expires_in=lifetime)
        self._audit.record(
            EventType.TOKEN_REFRESHED,
            "Session token refreshed",
            outcome=Outcome.SUCCESS,
            user_id=account.id,
            ip_address=ip_address,
            details={"previous_key_id": claims.key_id},
        )
        return AuthSuccess(
            account=account,
            token=token,
            expires_in=lifetime,
            mfa_setup_required=self._enrollment.setup_required(account),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_session(self, account: Account, remember_me: bool, ip_address: str | None, *, method: str) -> AuthSuccess:
        lifetime = (
            self._settings.remember_me_expire_seconds if remember_me else self._settings.token_expire_seconds
        )
        token = self._keys.issue_token(account.id, account.role, expires_in=lifetime)
        setup_required = self._enrollment.setup_required(account)
        self._store.update_last_login(account.id)
        self._audit.record(
            EventType.LOGIN_SUCCESS,
            "Login successful" if method == "password" else f"Login successful (MFA verified via {method})",
            outcome=Outcome.SUCCESS,
            user_id=account.id,
            ip_address=ip_address,
            details={
                "method": method,
                "remember_me": remember_me,
                "mfa_setup_required": setup_required,
                "change_password_required": account.change_password_required,
            },
        )
        return AuthSuccess(account=account, token=token, expires_in=lifetime, mfa_setup_required=setup_required)

    def _login_failure(
        self,
        message: str,
        account_id: int | None,
        ip_address: str | None,
        *,
        outcome: Outcome = Outcome.FAILURE,
        severity: Severity | None = None,
        details: dict | None = None,
    ) -> None:
        self._audit.record(
            EventType.LOGIN_FAILURE,
            message,
            outcome=outcome,
            severity=severity,
            user_id=account_id,
            ip_address=ip_address,
            details=details,
        )

    def _mfa_failure(self, message: str, account_id: int | None, ip_address: str | None, details: dict) -> None:
        self._audit.record(
            EventType.MFA_VERIFY_FAILURE,
            message,
            outcome=Outcome.FAILURE,
            user_id=account_id,
            ip_address=ip_address,
            details=details,
        )

    def _system_error(self, operation: str, account: Account | None, ip_address: str | None, exc: Exception) -> None:
        """Record a CRITICAL event for a storage failure, when the account is known.

        The audit table usually shares the failing database, so a failure to
        record is logged and the original error still propagates.
        """
        logger.error("%s failed with a storage error: %s", operation, exc)
        if account is None:
            return
        try:
            self._audit.record(
                EventType.SYSTEM_ERROR,
                f"Storage failure during {operation}",
                outcome=Outcome.FAILURE,
                user_id=account.id,
                ip_address=ip_address,
                details={"operation": operation, "error": type(exc).__name__},
            )
        except SQLAlchemyError:
            logger.exception("Could not record SYSTEM_ERROR audit event for account %s", account.id)
