"""
auth/models.py -- Domain types for authentication and account security.

Pattern: Data class (pure data containers). Stores and services do the work;
the only logic here is construction-time validation that keeps invalid states
unrepresentable (an enabled MFA without a secret, a cleared lock that still
carries an expiry, a negative failure counter).

Result types:
  Services return typed outcomes instead of raising for expected failures.
  AuthSuccess / ChallengeRequired / Rejected are the three shapes a login can
  take; every other operation returns its value or a Rejected.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"
    PRACTICE_MANAGER = "practice_manager"
    BILLING = "billing"
    INTAKE_COORDINATOR = "intake_coordinator"
    IT_SUPPORT = "it_support"
    MARKETING = "marketing"


class MfaState(str, Enum):
    """Enrollment state derived from the account record.

    The secret is persisted in the same write that generates it, so the
    secret_generated and pending_verification stages are one stored state.
    """

    UNENROLLED = "unenrolled"
    PENDING_VERIFICATION = "pending_verification"
    ENROLLED = "enrolled"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    GRACE = "grace"
    RETIRED = "retired"


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"
    INVALID_BACKUP_CODE = "invalid_backup_code"
    UNAUTHORIZED = "unauthorized"
    KEY_NOT_FOUND = "key_not_found"
    TOKEN_INVALID = "token_invalid"
    ROTATION_IN_PROGRESS = "rotation_in_progress"
    INVALID_GRACE_PERIOD = "invalid_grace_period"
    # Admin-facing and setup-flow outcomes
    NOT_FOUND = "not_found"
    MFA_ALREADY_ENABLED = "mfa_already_enabled"
    MFA_NOT_ENABLED = "mfa_not_enabled"
    MFA_SETUP_NOT_STARTED = "mfa_setup_not_started"
    EXEMPTION_NOT_ALLOWED = "exemption_not_allowed"
    ACCOUNT_EXISTS = "account_exists"


@dataclass
class Account:
    """Identity and security state for one user.

    email is stored lower-cased; lookups normalize before querying so the
    uniqueness constraint is effectively case-insensitive.

    mfa_backup_codes holds HMAC digests, never cleartext codes.
    mfa_last_used_step is the highest TOTP time step ever accepted for this
    account; a code for that step or any earlier one is a replay.

    lock_expires_at is None with account_locked=True for a permanent lock.
    """

    email: str
    role: Role
    password_hash: str
    id: int | None = None
    is_superadmin: bool = False
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_secret: str | None = None
    mfa_backup_codes: tuple[str, ...] = ()
    mfa_required: bool = False
    mfa_exempt_until: datetime | None = None
    mfa_exemption_used: bool = False
    mfa_last_used_step: int | None = None
    failed_login_attempts: int = 0
    account_locked: bool = False
    lock_expires_at: datetime | None = None
    last_failed_login: datetime | None = None
    change_password_required: bool = False
    created_at: datetime | None = None
    last_login: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.role, Role):
            self.role = Role(self.role)
        if self.mfa_enabled and not self.mfa_secret:
            raise ValueError("mfa_enabled requires an MFA secret")
        if self.failed_login_attempts < 0:
            raise ValueError("failed_login_attempts cannot be negative")
        if not self.account_locked and self.lock_expires_at is not None:
            raise ValueError("lock_expires_at is only meaningful on a locked account")

    @property
    def mfa_state(self) -> MfaState:
        if self.mfa_enabled:
            return MfaState.ENROLLED
        if self.mfa_secret:
            return MfaState.PENDING_VERIFICATION
        return MfaState.UNENROLLED


@dataclass(frozen=True)
class SigningKey:
    """One entry in the session-token key ring.

    secret is the raw HMAC key. It is only ever held in process memory and,
    encrypted, in the signing_keys table.
    """

    key_id: str
    secret: str = field(repr=False)
    status: KeyStatus
    created_at: datetime
    grace_expires_at: datetime | None = None
    retired_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status is KeyStatus.GRACE and self.grace_expires_at is None:
            raise ValueError("a grace key needs grace_expires_at")


@dataclass(frozen=True)
class TokenClaims:
    """The verified identity carried by a session or pending-MFA token."""

    account_id: int
    role: Role
    key_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Rejected:
    """A recoverable, typed failure. message is safe to show the caller."""

    code: AuthErrorCode
    message: str


@dataclass(frozen=True)
class AuthSuccess:
    """A completed login: token is the signed session token."""

    account: Account
    token: str
    expires_in: int
    mfa_setup_required: bool = False


@dataclass(frozen=True)
class ChallengeRequired:
    """Password accepted; a TOTP or backup code is still owed.

    pending_ref is a short-lived signed reference that completes the login
    through CredentialAuthenticator.complete_mfa_challenge().
    """

    account_id: int
    pending_ref: str
    expires_in: int


@dataclass(frozen=True)
class MfaSetup:
    """Returned once by begin_setup(). qr_code_png is base64-encoded PNG."""

    secret: str
    provisioning_uri: str
    qr_code_png: str


@dataclass(frozen=True)
class KeyRingStatus:
    """Diagnostic view of the key ring. Never contains secret material.

    key_count is the number of keys that still validate tokens: the active key
    plus grace keys whose window is open. Retired keys are not counted.
    """

    active_key_id: str
    active_key_age_seconds: int
    key_count: int
    next_expiring_grace_key: str | None = None
    next_grace_expires_at: datetime | None = None
