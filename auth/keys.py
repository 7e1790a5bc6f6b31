"""
auth/keys.py -- Signing-key ring: token issue/validate, rotation, grace sweep.

Session tokens are HS256 JWTs (python-jose) carrying the signing key id in
the `kid` header. The ring holds one ACTIVE key that signs new tokens, any
number of GRACE keys that still validate tokens issued before a rotation,
and RETIRED keys that validate nothing.

Concurrency model:
  The ring is an immutable snapshot (_Ring) published by replacing one
  attribute. Readers (issue_token, validate_token, status) take the current
  snapshot without locking and never see a half-applied rotation. Writers
  (rotate, sweep, reload) serialize on _write_lock and publish a fresh
  snapshot only after the database transaction committed.

  rotate() does not queue: a second caller while a rotation is in flight gets
  Rejected(ROTATION_IN_PROGRESS) immediately.

Multi-worker deployments:
  Each worker holds its own snapshot. A token signed by a key this worker has
  not seen triggers a throttled reload from the database before it is
  rejected, and the periodic sweep reloads the ring as well.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Mapping

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError

from audit.models import EventType, Outcome
from audit.store import AuditLog
from auth.models import AuthErrorCode, KeyRingStatus, KeyStatus, Rejected, Role, SigningKey, TokenClaims
from auth.store import SigningKeyStore, StaleKeyRingError
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("qualibrite.auth.keys")

_ALGORITHM = "HS256"
MIN_GRACE_DAYS = 1
MAX_GRACE_DAYS = 90
# Claims the key ring owns; caller-supplied extras cannot override them.
_RESERVED_CLAIMS = frozenset({"sub", "role", "typ", "iat", "exp", "jti", "iss", "aud"})
_UNKNOWN_KID_RELOAD_SECONDS = 5.0
_IN_PROGRESS = Rejected(AuthErrorCode.ROTATION_IN_PROGRESS, "A key rotation is already in progress.")


@dataclass(frozen=True)
class _Ring:
    keys: Mapping[str, SigningKey]
    active_id: str


def _new_signing_key(now: datetime) -> SigningKey:
    return SigningKey(
        key_id=secrets.token_hex(8),
        secret=secrets.token_hex(64),
        status=KeyStatus.ACTIVE,
        created_at=now,
    )


class SigningKeyManager:
    """Owns the key ring for one process.

    Usage:
        keys = SigningKeyManager(SigningKeyStore(url, settings.secret_key), audit, settings)
        token = keys.issue_token(account.id, account.role)
        claims = keys.validate_token(token)   # TokenClaims or Rejected
        keys.rotate(grace_days=30, acting_admin_id=1)
    """

    def __init__(self, store: SigningKeyStore, audit: AuditLog, settings: Settings, clock: Clock = utcnow) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings
        self._clock = clock
        self._write_lock = threading.Lock()
        self._last_reload = 0.0
        self._ring: _Ring
        self.reload()

    # ------------------------------------------------------------------
    # Ring maintenance
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Rebuild the snapshot from the database, seeding an active key if none exists."""
        with self._write_lock:
            self._reload_locked()

    def _reload_locked(self) -> None:
        keys = {k.key_id: k for k in self._store.load_all()}
        active = [k for k in keys.values() if k.status is KeyStatus.ACTIVE]
        if not active:
            seed = _new_signing_key(self._clock())
            try:
                self._store.insert_active(seed)
                logger.info("Seeded signing key ring with key %s", seed.key_id)
            except IntegrityError:
                logger.info("Another worker seeded the signing key ring; reloading")
            keys = {k.key_id: k for k in self._store.load_all()}
            active = [k for k in keys.values() if k.status is KeyStatus.ACTIVE]
        self._ring = _Ring(keys=MappingProxyType(keys), active_id=active[0].key_id)
        self._last_reload = self._clock().timestamp()

    def _reload_for_unknown_kid(self) -> None:
        if self._clock().timestamp() - self._last_reload < _UNKNOWN_KID_RELOAD_SECONDS:
            return
        self.reload()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_token(
        self,
        account_id: int,
        role: Role,
        claims: dict | None = None,
        *,
        token_type: str = "access",
        expires_in: int = 0,
    ) -> str:
        """Sign a token with the active key.

        expires_in defaults to Settings.token_expire_seconds. Extra claims are
        carried verbatim; reserved claim names are ignored.
        """
        ring = self._ring
        key = ring.keys[ring.active_id]
        now = self._clock()
        lifetime = expires_in if expires_in > 0 else self._settings.token_expire_seconds
        payload = {k: v for k, v in (claims or {}).items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "sub": str(account_id),
                "role": Role(role).value,
                "typ": token_type,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
                "jti": secrets.token_urlsafe(16),
                "iss": self._settings.token_issuer,
                "aud": self._settings.token_audience,
            }
        )
        return jwt.encode(payload, key.secret, algorithm=_ALGORITHM, headers={"kid": key.key_id})

    def validate_token(self, token: str, token_type: str = "access") -> TokenClaims | Rejected:
        """Verify signature, key state, expiry, issuer, audience and token type.

        A grace key whose window has closed is rejected even if the sweep
        has not retired it yet. Expiry is judged by this manager's clock.
        """
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Malformed token.")
        if not kid:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Token carries no key id.")

        key = self._ring.keys.get(kid)
        if key is None:
            self._reload_for_unknown_kid()
            key = self._ring.keys.get(kid)
        if key is None:
            return Rejected(AuthErrorCode.KEY_NOT_FOUND, "Token was signed by an unknown key.")

        now = self._clock()
        if key.status is KeyStatus.RETIRED:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Token was signed by a retired key.")
        if key.status is KeyStatus.GRACE and now >= key.grace_expires_at:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Token was signed by an expired key.")

        try:
            payload = jwt.decode(
                token,
                key.secret,
                algorithms=[_ALGORITHM],
                audience=self._settings.token_audience,
                issuer=self._settings.token_issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Token signature or claims are invalid.")

        try:
            account_id = int(payload["sub"])
            role = Role(payload["role"])
            issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
            expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Token is missing required claims.")
        if now >= expires_at:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Token has expired.")
        if payload.get("typ") != token_type:
            return Rejected(AuthErrorCode.TOKEN_INVALID, "Wrong token type.")

        return TokenClaims(
            account_id=account_id,
            role=role,
            key_id=kid,
            token_type=token_type,
            issued_at=issued_at,
            expires_at=expires_at,
            extra={k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS},
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        grace_days: int | None = None,
        acting_admin_id: int | None = None,
        ip_address: str | None = None,
    ) -> str | Rejected:
        """Generate a new active key and demote the current one to grace.

        Returns the new key id, or Rejected for a grace period outside
        1..90 days or a rotation that lost a race. Every refusal is audited.
        Authorization is the caller's job (policy.can_manage_keys).
        """
        grace_days = self._settings.key_grace_default_days if grace_days is None else grace_days
        if not MIN_GRACE_DAYS <= grace_days <= MAX_GRACE_DAYS:
            message = f"Grace period must be between {MIN_GRACE_DAYS} and {MAX_GRACE_DAYS} days."
            return self._rotation_denied(
                acting_admin_id,
                ip_address,
                message,
                Rejected(AuthErrorCode.INVALID_GRACE_PERIOD, message),
                details={"grace_days": grace_days},
            )

        if not self._write_lock.acquire(blocking=False):
            return self._rotation_denied(acting_admin_id, ip_address, "Another rotation is in progress.")
        try:
            ring = self._ring
            old = ring.keys[ring.active_id]
            now = self._clock()
            new = _new_signing_key(now)
            grace_until = now + timedelta(days=grace_days)
            try:
                self._store.rotate(new, old.key_id, grace_until)
            except StaleKeyRingError:
                self._reload_locked()
                denied = True
            else:
                keys = dict(ring.keys)
                keys[old.key_id] = replace(old, status=KeyStatus.GRACE, grace_expires_at=grace_until)
                keys[new.key_id] = new
                self._ring = _Ring(keys=MappingProxyType(keys), active_id=new.key_id)
                denied = False
        finally:
            self._write_lock.release()

        if denied:
            return self._rotation_denied(acting_admin_id, ip_address, "The key ring changed during rotation.")
        self._audit.record(
            EventType.KEY_ROTATED,
            f"Signing key rotated; previous key valid until {grace_until.isoformat()}",
            outcome=Outcome.SUCCESS,
            user_id=acting_admin_id,
            ip_address=ip_address,
            details={
                "new_key_id": new.key_id,
                "previous_key_id": old.key_id,
                "grace_days": grace_days,
                "grace_expires_at": grace_until.isoformat(),
            },
        )
        logger.info("Rotated signing key %s -> %s (grace %d days)", old.key_id, new.key_id, grace_days)
        return new.key_id

    def _rotation_denied(
        self,
        acting_admin_id: int | None,
        ip_address: str | None,
        reason: str,
        rejected: Rejected = _IN_PROGRESS,
        details: dict | None = None,
    ) -> Rejected:
        self._audit.record(
            EventType.KEY_ROTATED,
            f"Signing key rotation refused: {reason}",
            outcome=Outcome.DENIED,
            user_id=acting_admin_id,
            ip_address=ip_address,
            details=details,
        )
        return rejected

    def sweep(self) -> list[str]:
        """Retire grace keys whose window has closed. Idempotent.

        Also refreshes the snapshot so rotations made by other workers become
        visible here.
        """
        with self._write_lock:
            retired = self._store.retire_expired(self._clock())
            self._reload_locked()
        for key_id in retired:
            self._audit.record(
                EventType.KEY_RETIRED,
                f"Signing key {key_id} retired after grace period",
                outcome=Outcome.SUCCESS,
                details={"key_id": key_id},
            )
        if retired:
            logger.info("Retired %d signing key(s): %s", len(retired), ", ".join(retired))
        return retired

    def status(self) -> KeyRingStatus:
        ring = self._ring
        active = ring.keys[ring.active_id]
        now = self._clock()
        live_grace = sorted(
            (k for k in ring.keys.values() if k.status is KeyStatus.GRACE and k.grace_expires_at > now),
            key=lambda k: k.grace_expires_at,
        )
        return KeyRingStatus(
            active_key_id=active.key_id,
            active_key_age_seconds=int((now - active.created_at).total_seconds()),
            # keys that still validate tokens: the active one plus open grace windows
            key_count=1 + len(live_grace),
            next_expiring_grace_key=live_grace[0].key_id if live_grace else None,
            next_grace_expires_at=live_grace[0].grace_expires_at if live_grace else None,
        )
