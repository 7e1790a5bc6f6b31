"""
api/routes/v1/admin.py -- Admin console: account recovery, MFA policy, key ring, audit trail.

Routes:
  POST  /api/admin/accounts                   -- create a staff account (admin)
  GET   /api/admin/user-details?userId=       -- one account's full security state
  GET   /api/admin/security-summary?role=     -- security state of every account with a role
  POST  /api/admin/temp-password/generate     -- issue a temporary password (admin)
  GET   /api/admin/locked-accounts            -- currently locked accounts (also /accounts/locked)
  POST  /api/admin/unlock-account             -- clear lock and counter (also /accounts/unlock)
  POST  /api/admin/reset-failed-attempts      -- zero the counter only
  PATCH /api/admin/update-mfa-requirement     -- require / relax MFA (admin)
  POST  /api/admin/reset-mfa                  -- clear a user's MFA enrollment
  POST  /api/admin/rotate-secret              -- rotate the signing key (superadmin)
  GET   /api/admin/secret-status              -- key ring diagnostics (superadmin)
  POST  /api/admin/sweep-keys                 -- retire expired grace keys now (superadmin)
  GET   /api/admin/security-events            -- filtered audit trail
  GET   /api/admin/security-events/summary    -- counts by severity and type

Target-level authorization (admin vs superadmin targets) lives in
auth/policy.py and is enforced inside the services; the dependencies here
only gate the console itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import raise_for
from api.models import (
    AccountCreatedResponse,
    AccountCreateRequest,
    AccountSecurityDetails,
    AccountSummary,
    AccountTargetRequest,
    KeyRingStatusResponse,
    LockedAccountRow,
    MfaRequirementRequest,
    RotateSecretRequest,
    RotateSecretResponse,
    SecurityEventRow,
    SecurityEventsResponse,
    SecurityEventsSummary,
    SecuritySummaryRow,
    SweepResponse,
    TemporaryPasswordResponse,
)
from api.routes.v1.auth import client_ip
from audit.models import EventType, Outcome, Severity
from auth.dependencies import require_admin, require_security_operator, require_superadmin
from auth.models import Account, Rejected, Role
from core.config import get_settings

# Auth policy:
# - account creation, temporary passwords and MFA requirement changes: require_admin
# - key ring operations:                         require_superadmin
# - everything else:                             require_security_operator
router = APIRouter()


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.post("/admin/accounts", response_model=AccountCreatedResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreateRequest,
    admin: Account = Depends(require_admin),
) -> AccountCreatedResponse:
    """Create a staff account with a temporary password shown once in the response."""
    result = request.app.state.services.accounts.create_staff_account(
        body.email, body.role, admin.id, ip_address=client_ip(request)
    )
    if isinstance(result, Rejected):
        raise_for(result)
    account, temporary = result
    return AccountCreatedResponse(user=AccountSummary.from_account(account), temporary_password=temporary)


@router.get("/admin/user-details", response_model=AccountSecurityDetails)
def user_details(
    request: Request,
    user_id: int = Query(alias="userId", ge=1),
    admin: Account = Depends(require_security_operator),
) -> AccountSecurityDetails:
    services = request.app.state.services
    result = services.accounts.account_details(user_id, admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return AccountSecurityDetails.from_account(result, locked=services.lockout.is_locked(result.id))


@router.get("/admin/security-summary", response_model=list[SecuritySummaryRow])
def security_summary(
    request: Request,
    role: Role = Query(),
    admin: Account = Depends(require_security_operator),
) -> list[SecuritySummaryRow]:
    """Password, MFA and lock state of every account with the given role."""
    services = request.app.state.services
    result = services.accounts.security_summary(role, admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return [SecuritySummaryRow.from_account(a, locked=services.lockout.is_locked(a.id)) for a in result]


@router.post("/admin/temp-password/generate", response_model=TemporaryPasswordResponse)
def generate_temporary_password(
    request: Request,
    body: AccountTargetRequest,
    admin: Account = Depends(require_admin),
) -> JSONResponse:
    """Replace a user's password with a one-time temporary password, shown once."""
    result = request.app.state.services.accounts.issue_temporary_password(
        body.user_id, admin.id, ip_address=client_ip(request)
    )
    if isinstance(result, Rejected):
        raise_for(result)
    account, temporary = result
    resp = JSONResponse(
        content=TemporaryPasswordResponse(
            user=AccountSummary.from_account(account), temporary_password=temporary
        ).to_json()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/admin/locked-accounts", response_model=list[LockedAccountRow])
@router.get("/admin/accounts/locked", response_model=list[LockedAccountRow])
def locked_accounts(request: Request, _: Account = Depends(require_security_operator)) -> list[LockedAccountRow]:
    return [LockedAccountRow.from_account(a) for a in request.app.state.services.lockout.list_locked()]


@router.post("/admin/unlock-account", response_model=AccountSummary)
@router.post("/admin/accounts/unlock", response_model=AccountSummary)
def unlock_account(
    request: Request,
    body: AccountTargetRequest,
    admin: Account = Depends(require_security_operator),
) -> AccountSummary:
    result = request.app.state.services.lockout.admin_unlock(body.user_id, admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return AccountSummary.from_account(result)


@router.post("/admin/reset-failed-attempts", response_model=AccountSummary)
def reset_failed_attempts(
    request: Request,
    body: AccountTargetRequest,
    admin: Account = Depends(require_security_operator),
) -> AccountSummary:
    lockout = request.app.state.services.lockout
    result = lockout.admin_reset_failed_attempts(body.user_id, admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return AccountSummary.from_account(result)


# ---------------------------------------------------------------------------
# MFA policy
# ---------------------------------------------------------------------------


@router.patch("/admin/update-mfa-requirement", response_model=AccountSummary)
def update_mfa_requirement(
    request: Request,
    body: MfaRequirementRequest,
    admin: Account = Depends(require_admin),
) -> AccountSummary:
    enrollment = request.app.state.services.mfa_enrollment
    result = enrollment.set_requirement(body.user_id, body.require_mfa, admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return AccountSummary.from_account(result)


@router.post("/admin/reset-mfa", response_model=AccountSummary)
def reset_mfa(
    request: Request,
    body: AccountTargetRequest,
    admin: Account = Depends(require_security_operator),
) -> AccountSummary:
    """Lost-device recovery: the user re-enrolls at next login if MFA is required."""
    enrollment = request.app.state.services.mfa_enrollment
    result = enrollment.disable(body.user_id, acting_user_id=admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return AccountSummary.from_account(result)


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


@router.post("/admin/rotate-secret", response_model=RotateSecretResponse)
def rotate_secret(
    request: Request,
    body: RotateSecretRequest,
    admin: Account = Depends(require_superadmin),
) -> RotateSecretResponse:
    """Rotate the signing key. Tokens signed by the old key stay valid for the grace period."""
    key_manager = request.app.state.services.key_manager
    grace_days = body.expiry_days or get_settings().key_grace_default_days
    result = key_manager.rotate(grace_days, acting_admin_id=admin.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return RotateSecretResponse(new_key_id=result, grace_days=grace_days)


@router.get("/admin/secret-status", response_model=KeyRingStatusResponse)
def secret_status(request: Request, _: Account = Depends(require_superadmin)) -> KeyRingStatusResponse:
    return KeyRingStatusResponse.from_status(request.app.state.services.key_manager.status())


@router.post("/admin/sweep-keys", response_model=SweepResponse)
def sweep_keys(request: Request, _: Account = Depends(require_superadmin)) -> SweepResponse:
    """Run the grace-key sweep now instead of waiting for the background loop."""
    return SweepResponse(retired_key_ids=request.app.state.services.key_manager.sweep())


# ---------------------------------------------------------------------------
# Security events
# ---------------------------------------------------------------------------


@router.get("/admin/security-events", response_model=SecurityEventsResponse)
def security_events(
    request: Request,
    severity: Optional[Severity] = Query(default=None),
    event_type: Optional[EventType] = Query(default=None, alias="eventType"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    user_id: Optional[int] = Query(default=None, alias="userId", ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    admin: Account = Depends(require_security_operator),
) -> SecurityEventsResponse:
    """Filtered audit trail, newest first. Viewing it is itself audited."""
    audit = request.app.state.services.audit
    events = audit.query(
        severity=severity,
        event_type=event_type,
        start=start_date,
        end=end_date,
        user_id=user_id,
        limit=limit,
        offset=offset,
    )
    filters = {
        "severity": severity.value if severity else None,
        "event_type": event_type.value if event_type else None,
        "start_date": start_date.isoformat() if start_date else None,
        "end_date": end_date.isoformat() if end_date else None,
        "user_id": user_id,
    }
    audit.record(
        EventType.SECURITY_EVENTS_VIEWED,
        "Security events viewed",
        outcome=Outcome.SUCCESS,
        user_id=admin.id,
        ip_address=client_ip(request),
        details={"filters": {k: v for k, v in filters.items() if v is not None}, "returned": len(events)},
    )
    return SecurityEventsResponse(
        events=[SecurityEventRow.from_event(e) for e in events],
        limit=limit,
        offset=offset,
    )


@router.get("/admin/security-events/summary", response_model=SecurityEventsSummary)
def security_events_summary(
    request: Request, _: Account = Depends(require_security_operator)
) -> SecurityEventsSummary:
    return SecurityEventsSummary(**request.app.state.services.audit.summary())

