"""
auth/tokens.py -- Password hashing, backup-code digests, cookie and CSRF helpers.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor makes
       brute-force expensive for low-entropy secrets. The DUMMY_HASH constant
       enables timing equalization in CredentialAuthenticator so response time
       does not reveal whether an email exists.

  Backup codes: 32 bits of randomness each, single use, rate-limited at the
       HTTP layer. Stored as HMAC-SHA256(SECRET_KEY, normalized_code) so a DB
       leak alone does not reveal them and lookup needs no bcrypt cost.

  Session tokens are signed by the rotating key ring in auth/keys.py, not
       here. This module only knows how to put a token into a cookie.

  CSRF: double-submit cookie. The server issues a random token in a cookie;
       state-changing requests must echo it in a header. A cross-site form
       cannot read the cookie, so it cannot produce the header.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import string

import bcrypt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

ACCESS_COOKIE = "access_token"
MFA_PENDING_COOKIE = "mfa_pending"
CSRF_COOKIE = "XSRF-TOKEN-COOKIE"
CSRF_HEADER = "X-CSRF-Token"

MIN_PASSWORD_LENGTH = 10
# bcrypt only reads the first 72 bytes; bcrypt>=5 refuses anything longer
MAX_PASSWORD_BYTES = 72
_SPECIAL_CHARS = set("!@#$%^&*()-_=+[]{};:,.?/<>|~")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers validate first: validate_password_strength() refuses anything
    over MAX_PASSWORD_BYTES, which bcrypt would reject with ValueError.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_settings.bcrypt_rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or a login attempt over 72 bytes
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# email does not exist.
DUMMY_HASH: str = hash_password("qualibrite_timing_dummy")


def validate_password_strength(password: str) -> list[str]:
    """Return the unmet password rules. An empty list means the password is acceptable."""
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        problems.append(f"at most {MAX_PASSWORD_BYTES} bytes")
    if not any(c.isupper() for c in password):
        problems.append("an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("a digit")
    if not any(c in _SPECIAL_CHARS for c in password):
        problems.append("a special character")
    return problems


def generate_temporary_password() -> str:
    """Random password that satisfies validate_password_strength()."""
    alphabet = string.ascii_letters + string.digits
    body = "".join(secrets.choice(alphabet) for _ in range(14))
    return f"{body}{secrets.choice(string.ascii_uppercase)}{secrets.choice(string.digits)}!a"


# ---------------------------------------------------------------------------
# Backup codes
# ---------------------------------------------------------------------------


def generate_backup_codes(count: int) -> list[str]:
    """Return `count` distinct codes in XXXX-XXXX format (uppercase hex)."""
    codes: set[str] = set()
    while len(codes) < count:
        raw = secrets.token_hex(4).upper()
        codes.add(f"{raw[:4]}-{raw[4:]}")
    return sorted(codes)


def normalize_backup_code(code: str) -> str:
    return code.strip().upper().replace("-", "").replace(" ", "")


def hash_backup_code(code: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, normalized code) as a hex string.

    Normalization drops dashes and spaces and upper-cases, so "abcd-1234",
    "ABCD1234" and "ABCD 1234" are the same code.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        normalize_backup_code(code).encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST. CSRF middleware covers the rest.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together. Remember-me
        logins pass the longer lifetime here.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def set_mfa_pending_cookie(response, pending_ref: str) -> None:
    """Carry the pending-MFA reference between the login and verify-mfa requests."""
    response.set_cookie(
        MFA_PENDING_COOKIE,
        value=pending_ref,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.pending_mfa_expire_seconds,
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(MFA_PENDING_COOKIE)


# ---------------------------------------------------------------------------
# CSRF (double-submit cookie)
# ---------------------------------------------------------------------------


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def csrf_tokens_match(cookie_token: str | None, header_token: str | None) -> bool:
    """Constant-time comparison; a missing value on either side never matches."""
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token, header_token)


def set_csrf_cookie(response, token: str) -> None:
    response.set_cookie(
        CSRF_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
    )
