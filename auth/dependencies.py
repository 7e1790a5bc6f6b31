"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token transports are checked in priority order:
  1. Session cookie ("access_token") -- set by the web client login flow.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on an Account after the key ring validates the token and the
account is re-read from the database, so deactivation and MFA policy
changes take effect on the next request rather than at token expiry.
A lockout only refuses new logins. Anyone can trip it by guessing at an
email, so it does not end sessions the real owner already holds.

Dependency ladder:
  try_get_session_account()  soft variant, returns None on any failure.
  get_session_account()      401 if unauthenticated. Allowed while a password
                             change or MFA setup is still owed.
  get_current_account()      additionally 403 password_change_required /
                             mfa_setup_required. Default for protected routes.
  require_security_operator()  admin, IT support or superadmin.
  require_admin()            admin or superadmin.
  require_superadmin()       superadmin only.

Layer rule: auth/dependencies.py may import from fastapi (for HTTPException /
Request) because this module is part of the FastAPI dependency injection
system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from audit.models import EventType, Outcome
from auth.models import Account, Rejected, Role
from auth.policy import is_security_operator
from auth.tokens import ACCESS_COOKIE


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


def try_get_session_account(request: Request) -> Account | None:
    """Authenticate the request via cookie or Bearer token.

    Returns the Account on success, None on any failure. A presented token
    that fails validation is audited as TOKEN_REJECTED.
    """
    token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(request)
    if not token:
        return None

    services = request.app.state.services
    claims = services.key_manager.validate_token(token)
    if isinstance(claims, Rejected):
        services.audit.record(
            EventType.TOKEN_REJECTED,
            f"Session token rejected: {claims.message}",
            outcome=Outcome.DENIED,
            ip_address=request.client.host if request.client else None,
            details={"reason": claims.code.value, "path": request.url.path},
        )
        return None

    account = services.account_store.get_by_id(claims.account_id)
    if account is None or not account.is_active:
        return None
    request.state.token_claims = claims
    return account


def get_session_account(request: Request) -> Account:
    """Require a valid session. Raises HTTP 401 if the request is not authenticated."""
    account = try_get_session_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account


def get_current_account(request: Request) -> Account:
    """Require a session that owes nothing.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    account = get_session_account(request)
    if account.change_password_required:
        raise HTTPException(
            status_code=403,
            detail={"code": "password_change_required", "message": "You must change your password to continue."},
        )
    if request.app.state.services.mfa_enrollment.setup_required(account):
        raise HTTPException(
            status_code=403,
            detail={"code": "mfa_setup_required", "message": "You must set up two-factor authentication to continue."},
        )
    return account


def get_mfa_setup_account(request: Request) -> Account:
    """Session allowed to manage its own MFA: everything but a pending password change."""
    account = get_session_account(request)
    if account.change_password_required:
        raise HTTPException(
            status_code=403,
            detail={"code": "password_change_required", "message": "You must change your password to continue."},
        )
    return account


def require_security_operator(request: Request) -> Account:
    """Admin console access. Raises HTTP 401 if unauthenticated, HTTP 403 otherwise."""
    account = get_current_account(request)
    if not is_security_operator(account):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Administrator access required."},
        )
    return account


def require_admin(request: Request) -> Account:
    """Require admin role (IT support is not enough)."""
    account = get_current_account(request)
    if not (account.is_superadmin or account.role is Role.ADMIN):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account


def require_superadmin(request: Request) -> Account:
    account = get_current_account(request)
    if not account.is_superadmin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Superadmin access required."},
        )
    return account
