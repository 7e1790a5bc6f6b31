"""
API request and response models for the Qualibrite account-security endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Wire format: JSON keys are camelCase (the web client's convention). Python
attributes stay snake_case; ApiModel's alias generator does the translation
and populate_by_name lets tests and internal callers use either form.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from audit.models import AuditEvent, EventType, Severity
from auth.models import Account, KeyRingStatus, MfaState, Role
from auth.tokens import validate_password_strength

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        """Serialize with camelCase keys, as FastAPI does for response_model."""
        return self.model_dump(by_alias=True, mode="json")


def _check_strength(value: str) -> str:
    problems = validate_password_strength(value)
    if problems:
        raise ValueError("Password needs " + ", ".join(problems) + ".")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(ApiModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = False


class MfaChallengeRequest(ApiModel):
    """Body for POST /api/auth/verify-mfa.

    mfa_token may be omitted when the browser carries the mfa_pending cookie.
    code is a 6-digit TOTP code or an XXXX-XXXX backup code.
    """

    mfa_token: Optional[str] = Field(default=None, max_length=4096)
    code: str = Field(min_length=6, max_length=20)


class RegisterRequest(ApiModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=1, max_length=128)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_strength(value)


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_strength(value)


class MfaCodeRequest(ApiModel):
    """A 6-digit TOTP code (setup confirmation, self-disable)."""

    code: str = Field(pattern=r"^\d{6}$")


class AccountTargetRequest(ApiModel):
    user_id: int = Field(ge=1)


class MfaRequirementRequest(ApiModel):
    user_id: int = Field(ge=1)
    require_mfa: bool


class RotateSecretRequest(ApiModel):
    expiry_days: Optional[int] = Field(default=None, ge=1, le=90)


class AccountCreateRequest(ApiModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountSummary(ApiModel):
    """Non-sensitive view of an account. Never carries hashes or MFA secrets."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: Role
    is_superadmin: bool
    mfa_enabled: bool
    mfa_required: bool
    change_password_required: bool
    last_login: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        """Factory method -- the mapping lives with the output model."""
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            is_superadmin=account.is_superadmin,
            mfa_enabled=account.mfa_enabled,
            mfa_required=account.mfa_required,
            change_password_required=account.change_password_required,
            last_login=account.last_login,
        )


class LockedAccountRow(ApiModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: Role
    failed_login_attempts: int
    lock_expires_at: Optional[datetime]
    last_failed_login: Optional[datetime]

    @classmethod
    def from_account(cls, account: Account) -> "LockedAccountRow":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            failed_login_attempts=account.failed_login_attempts,
            lock_expires_at=account.lock_expires_at,
            last_failed_login=account.last_failed_login,
        )


def _password_type(account: Account) -> str:
    return "temporary" if account.change_password_required else "permanent"


class AccountSecurityDetails(ApiModel):
    """Full security posture of one account for the admin console."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: Role
    is_superadmin: bool
    is_active: bool
    password_type: str
    mfa_enabled: bool
    mfa_required: bool
    mfa_exempt_until: Optional[datetime] = None
    backup_codes_remaining: int
    account_locked: bool
    failed_login_attempts: int
    last_failed_login: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account, *, locked: bool) -> "AccountSecurityDetails":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            is_superadmin=account.is_superadmin,
            is_active=account.is_active,
            password_type=_password_type(account),
            mfa_enabled=account.mfa_enabled,
            mfa_required=account.mfa_required,
            mfa_exempt_until=account.mfa_exempt_until,
            backup_codes_remaining=len(account.mfa_backup_codes),
            account_locked=locked,
            failed_login_attempts=account.failed_login_attempts,
            last_failed_login=account.last_failed_login,
            lock_expires_at=account.lock_expires_at,
            last_login=account.last_login,
            created_at=account.created_at,
        )


class SecuritySummaryRow(ApiModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    password_type: str
    mfa_enabled: bool
    mfa_required: bool
    account_locked: bool
    failed_login_attempts: int
    last_failed_login: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account, *, locked: bool) -> "SecuritySummaryRow":
        return cls(
            id=account.id,
            email=account.email,
            password_type=_password_type(account),
            mfa_enabled=account.mfa_enabled,
            mfa_required=account.mfa_required,
            account_locked=locked,
            failed_login_attempts=account.failed_login_attempts,
            last_failed_login=account.last_failed_login,
            lock_expires_at=account.lock_expires_at,
        )


class LoginResponse(ApiModel):
    """Either a completed login (user + token) or an MFA challenge marker."""

    mfa_required: bool = False
    mfa_token: Optional[str] = None
    user: Optional[AccountSummary] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: int
    requires_password_change: bool = False
    mfa_setup_required: bool = False


class MfaStatusResponse(ApiModel):
    state: MfaState
    mfa_enabled: bool
    mfa_required: bool
    needs_setup: bool
    exempt_until: Optional[datetime] = None
    exemption_available: bool
    backup_codes_remaining: int


class MfaSetupResponse(ApiModel):
    secret: str
    qr_code: str
    provisioning_uri: str


class BackupCodesResponse(ApiModel):
    backup_codes: list[str]
    message: str = "Store these codes somewhere safe. Each can be used once and they will not be shown again."


class ExemptionResponse(ApiModel):
    exempt_until: datetime


class AccountCreatedResponse(ApiModel):
    user: AccountSummary
    temporary_password: Optional[str] = None


class TemporaryPasswordResponse(ApiModel):
    """Shown once; the user must change it at next login."""

    user: AccountSummary
    temporary_password: str


class RotateSecretResponse(ApiModel):
    new_key_id: str
    grace_days: int


class SweepResponse(ApiModel):
    retired_key_ids: list[str]


class KeyRingStatusResponse(ApiModel):
    """Diagnostic view of the key ring. Never contains key material."""

    active_key_id: str
    active_key_age_seconds: int
    key_count: int
    next_expiring_grace_key: Optional[str] = None
    next_grace_expires_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: KeyRingStatus) -> "KeyRingStatusResponse":
        return cls(
            active_key_id=status.active_key_id,
            active_key_age_seconds=status.active_key_age_seconds,
            key_count=status.key_count,
            next_expiring_grace_key=status.next_expiring_grace_key,
            next_grace_expires_at=status.next_grace_expires_at,
        )


class SecurityEventRow(ApiModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event_type: EventType
    severity: Severity
    outcome: str
    message: str
    timestamp: datetime
    user_id: Optional[int] = None
    target_user_id: Optional[int] = None
    ip_address: Optional[str] = None
    details: dict = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: AuditEvent) -> "SecurityEventRow":
        return cls(
            id=event.id,
            event_type=event.event_type,
            severity=event.severity,
            outcome=event.outcome.value,
            message=event.message,
            timestamp=event.timestamp,
            user_id=event.user_id,
            target_user_id=event.target_user_id,
            ip_address=event.ip_address,
            details=event.details,
        )


class SecurityEventsResponse(ApiModel):
    events: list[SecurityEventRow]
    limit: int
    offset: int


class SecurityEventsSummary(ApiModel):
    by_severity: dict[str, int]
    by_event_type: dict[str, int]


class MessageResponse(ApiModel):
    message: str


class CsrfTokenResponse(ApiModel):
    csrf_token: str


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
