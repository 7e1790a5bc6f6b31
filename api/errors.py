"""
api/errors.py -- Map service-layer Rejected outcomes onto HTTP errors.

Services return Rejected(code, message) for expected failures; routes call
raise_for() to turn one into an HTTPException whose detail is the
{"code", "message"} dict the exception handler wraps in ErrorResponse.

MFA code failures are collapsed to one public code so a caller cannot tell
a wrong TOTP code from a used backup code.
"""

from __future__ import annotations

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from auth.models import AuthErrorCode, Rejected

_STATUS: dict[AuthErrorCode, int] = {
    AuthErrorCode.INVALID_CREDENTIALS: 401,
    AuthErrorCode.ACCOUNT_LOCKED: 423,
    AuthErrorCode.MFA_REQUIRED: 403,
    AuthErrorCode.INVALID_MFA_CODE: 400,
    AuthErrorCode.INVALID_BACKUP_CODE: 400,
    AuthErrorCode.UNAUTHORIZED: 403,
    AuthErrorCode.KEY_NOT_FOUND: 401,
    AuthErrorCode.TOKEN_INVALID: 401,
    AuthErrorCode.ROTATION_IN_PROGRESS: 409,
    AuthErrorCode.INVALID_GRACE_PERIOD: 400,
    AuthErrorCode.NOT_FOUND: 404,
    AuthErrorCode.MFA_ALREADY_ENABLED: 400,
    AuthErrorCode.MFA_NOT_ENABLED: 400,
    AuthErrorCode.MFA_SETUP_NOT_STARTED: 400,
    AuthErrorCode.EXEMPTION_NOT_ALLOWED: 403,
    AuthErrorCode.ACCOUNT_EXISTS: 409,
}

_PUBLIC_CODE: dict[AuthErrorCode, str] = {
    AuthErrorCode.INVALID_MFA_CODE: "invalid_code",
    AuthErrorCode.INVALID_BACKUP_CODE: "invalid_code",
}


def http_error(rejected: Rejected) -> HTTPException:
    return HTTPException(
        status_code=_STATUS[rejected.code],
        detail={
            "code": _PUBLIC_CODE.get(rejected.code, rejected.code.value),
            "message": rejected.message,
        },
    )


def raise_for(rejected: Rejected) -> None:
    raise http_error(rejected)


def bad_request(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": code, "message": message})


def error_response(rejected: Rejected) -> JSONResponse:
    """Build the ErrorResponse body directly, for routes that set headers on failures too."""
    exc = http_error(rejected)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
