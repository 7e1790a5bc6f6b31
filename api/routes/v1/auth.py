"""
api/routes/v1/auth.py -- Login, MFA challenge, session and self-service endpoints.

Routes:
  GET  /api/auth/csrf-token              -- issue/echo the CSRF token (public)
  POST /api/auth/register                -- patient self-registration (public)
  POST /api/auth/login                   -- password step; session cookie or MFA challenge
  POST /api/auth/verify-mfa              -- MFA step; TOTP or backup code
  POST /api/auth/logout                  -- clears cookies; audits LOGOUT when a session existed
  GET  /api/auth/me                      -- current account (session may owe setup)
  POST /api/auth/change-password         -- re-checks current password
  POST /api/auth/request-mfa-exemption   -- one-time "remind me later"
  POST /api/auth/refresh-token           -- new token under the active key, same lifetime

Security:
  POST /login and /verify-mfa are rate-limited per client IP (LOGIN_RATE_LIMIT).
  CredentialAuthenticator owns timing equalization -- never inline a lookup
  plus verify_password() here.
  Cache-Control: no-store on every response that carries a token.
  Unknown email and wrong password produce the same 401 body.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.errors import bad_request, error_response, raise_for
from api.limiter import LOGIN_LIMIT, limiter
from api.models import (
    AccountSummary,
    ChangePasswordRequest,
    CsrfTokenResponse,
    ExemptionResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaChallengeRequest,
    RegisterRequest,
)
from audit.models import EventType, Outcome
from auth.accounts import WeakPasswordError
from auth.dependencies import get_session_account, try_get_session_account
from auth.models import Account, AuthSuccess, ChallengeRequired, Rejected
from auth.tokens import (
    MFA_PENDING_COOKIE,
    clear_auth_cookies,
    set_auth_cookie,
    set_mfa_pending_cookie,
)

# Auth policy:
# - GET  /api/auth/csrf-token:             public
# - POST /api/auth/register:               public
# - POST /api/auth/login:                  public -- login endpoint must be unauthenticated
# - POST /api/auth/verify-mfa:             public -- holds a pending-MFA reference, not a session
# - POST /api/auth/logout:                 public -- clearing a cookie needs no prior auth
# - GET  /api/auth/me:                     requires session (get_session_account)
# - POST /api/auth/change-password:        requires session (get_session_account)
# - POST /api/auth/request-mfa-exemption:  requires session (get_session_account)
# - POST /api/auth/refresh-token:          requires session (get_session_account)
router = APIRouter()


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _session_response(result: AuthSuccess) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=AccountSummary.from_account(result.account),
            access_token=result.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=result.expires_in,
            requires_password_change=result.account.change_password_required,
            mfa_setup_required=result.mfa_setup_required,
        ).to_json(),
    )
    set_auth_cookie(resp, result.token, result.expires_in)
    resp.delete_cookie(MFA_PENDING_COOKIE)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(request: Request) -> CsrfTokenResponse:
    """Return the CSRF token the middleware attached to this response's cookie."""
    return CsrfTokenResponse(csrf_token=getattr(request.state, "csrf_token", ""))


@router.post("/auth/register", response_model=AccountSummary, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountSummary:
    """Create a patient account. Staff accounts are created by admins."""
    services = request.app.state.services
    try:
        account = services.accounts.register(body.email, body.password, ip_address=client_ip(request))
    except WeakPasswordError as exc:
        raise bad_request("weak_password", str(exc)) from exc
    if account is None:
        raise HTTPException(
            status_code=409,
            detail={"code": "registration_failed", "message": "Registration failed. Try signing in instead."},
        )
    return AccountSummary.from_account(account)


@limiter.limit(LOGIN_LIMIT)  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Password step of the login.

    200 with a session cookie, or 200 with mfaRequired=true and a pending
    reference (also set as the httpOnly mfa_pending cookie). 401 for bad
    credentials, 423 for a locked account.
    """
    services = request.app.state.services
    result = services.authenticator.authenticate(
        body.email, body.password, remember_me=body.remember_me, ip_address=client_ip(request)
    )
    if isinstance(result, Rejected):
        return _no_store(error_response(result))
    if isinstance(result, ChallengeRequired):
        resp = JSONResponse(
            status_code=200,
            content=LoginResponse(
                mfa_required=True,
                mfa_token=result.pending_ref,
                expires_in=result.expires_in,
            ).to_json(),
        )
        set_mfa_pending_cookie(resp, result.pending_ref)
        return _no_store(resp)
    return _session_response(result)


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/verify-mfa", response_model=LoginResponse)
def verify_mfa(request: Request, body: MfaChallengeRequest) -> JSONResponse:
    """MFA step of the login. Accepts a TOTP code or a backup code."""
    services = request.app.state.services
    pending_ref = body.mfa_token or request.cookies.get(MFA_PENDING_COOKIE, "")
    result = services.authenticator.complete_mfa_challenge(pending_ref, body.code, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        return _no_store(error_response(result))
    return _session_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Clear the session cookies. Tokens are stateless and expire on their own."""
    account = try_get_session_account(request)
    if account is not None:
        request.app.state.services.audit.record(
            EventType.LOGOUT,
            "Logged out",
            outcome=Outcome.SUCCESS,
            user_id=account.id,
            ip_address=client_ip(request),
        )
    resp = JSONResponse(content=MessageResponse(message="Logged out.").to_json())
    clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints (session may still owe a password change / MFA setup)
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountSummary)
async def me(current: Account = Depends(get_session_account)) -> AccountSummary:
    """Return identity information for the current session."""
    return AccountSummary.from_account(current)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current: Account = Depends(get_session_account),
) -> MessageResponse:
    services = request.app.state.services
    try:
        result = services.accounts.change_password(
            current.id, body.current_password, body.new_password, ip_address=client_ip(request)
        )
    except WeakPasswordError as exc:
        raise bad_request("weak_password", str(exc)) from exc
    if isinstance(result, Rejected):
        # 400, not 401: the session itself is still valid
        raise bad_request("invalid_current_password", result.message)
    return MessageResponse(message="Password changed.")


@router.post("/auth/request-mfa-exemption", response_model=ExemptionResponse)
def request_mfa_exemption(request: Request, current: Account = Depends(get_session_account)) -> ExemptionResponse:
    services = request.app.state.services
    result = services.mfa_enrollment.request_exemption(current.id, ip_address=client_ip(request))
    if isinstance(result, Rejected):
        raise_for(result)
    return ExemptionResponse(exempt_until=result)


@router.post("/auth/refresh-token", response_model=LoginResponse)
def refresh_token(request: Request, current: Account = Depends(get_session_account)) -> JSONResponse:
    """Reissue the session token under the current signing key, keeping its lifetime.

    The presented token stays valid until its own expiry.
    """
    services = request.app.state.services
    result = services.authenticator.refresh_session(
        current, request.state.token_claims, ip_address=client_ip(request)
    )
    return _session_response(result)
