"""
api/routes/v1/mfa.py -- Self-service MFA enrollment.

Routes:
  GET  /api/mfa/status   -- enrollment state, requirement, exemption, codes left
  POST /api/mfa/setup    -- new pending secret + QR code
  POST /api/mfa/verify   -- confirm the pending secret; returns backup codes once
  POST /api/mfa/disable  -- turn MFA off; needs a current TOTP code

status/setup/verify accept a session that still owes MFA setup (that is how
it gets paid). disable needs a fully authorized session.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.errors import raise_for
from api.models import BackupCodesResponse, MessageResponse, MfaCodeRequest, MfaSetupResponse, MfaStatusResponse
from api.routes.v1.auth import client_ip
from auth.dependencies import get_current_account, get_mfa_setup_account
from auth.models import Account, Rejected

router = APIRouter()


@router.get("/mfa/status", response_model=MfaStatusResponse)
def mfa_status(request: Request, current: Account = Depends(get_mfa_setup_account)) -> MfaStatusResponse:
    services = request.app.state.services
    enrollment = services.mfa_enrollment
    return MfaStatusResponse(
        state=current.mfa_state,
        mfa_enabled=current.mfa_enabled,
        mfa_required=current.mfa_required,
        needs_setup=enrollment.setup_required(current),
        exempt_until=current.mfa_exempt_until,
        exemption_available=enrollment.exemption_available(current),
        backup_codes_remaining=len(current.mfa_backup_codes),
    )


@router.post("/mfa/setup", response_model=MfaSetupResponse)
def mfa_setup(request: Request, current: Account = Depends(get_mfa_setup_account)) -> MfaSetupResponse:
    """Start (or restart) enrollment. The secret is shown here and never again."""
    result = request.app.state.services.mfa_enrollment.begin_setup(current.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return MfaSetupResponse(
        secret=result.secret,
        qr_code=f"data:image/png;base64,{result.qr_code_png}",
        provisioning_uri=result.provisioning_uri,
    )


@router.post("/mfa/verify", response_model=BackupCodesResponse)
def mfa_verify(
    request: Request,
    body: MfaCodeRequest,
    current: Account = Depends(get_mfa_setup_account),
) -> BackupCodesResponse:
    result = request.app.state.services.mfa_enrollment.verify_setup(current.id, body.code, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return BackupCodesResponse(backup_codes=result)


@router.post("/mfa/disable", response_model=MessageResponse)
def mfa_disable(
    request: Request,
    body: MfaCodeRequest,
    current: Account = Depends(get_current_account),
) -> MessageResponse:
    """Disable MFA on the caller's own account after proving possession of the device."""
    enrollment = request.app.state.services.mfa_enrollment
    result = enrollment.disable(current.id, current.id, ip_address=client_ip(request), code=body.code)
    if isinstance(result, Rejected):
        raise_for(result)
    return MessageResponse(message="Two-factor authentication disabled.")
