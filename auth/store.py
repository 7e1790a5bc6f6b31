"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and signing keys.

Pattern: Repository + Data Mapper (same as audit/store.py).
AccountStore and SigningKeyStore are the repositories; _row_to_account and
_row_to_key are the mappers. Service and route code never touches SQL directly.

Concurrency:
  Every security-state transition is a conditional UPDATE evaluated by the
  database, never a read-modify-write in Python:

    record_failure()      increments the counter (UPDATE ... RETURNING) and
                          sets the lock in the same transaction, conditional
                          on the row still being unlocked.
    clear_expired_lock()  only matches while the lock is still expired, so of
                          two concurrent callers exactly one sees rowcount 1.
    record_totp_step()    compare-and-set on mfa_last_used_step.
    consume_backup_code() compare-and-set on the stored digest list.
    enable_mfa()          compare-and-set on the pending secret.

  A partial unique index on signing_keys(status) WHERE status = 'active'
  makes "exactly one active key" a database invariant as well as an
  in-process one.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Signing secrets are Fernet-encrypted with a key derived from the master
  SECRET_KEY. Backup codes arrive here already hashed.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Account, KeyStatus, Role, SigningKey
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("qualibrite.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False),
    Column("is_superadmin", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),
    Column("mfa_backup_codes", Text),  # JSON list of HMAC digests
    Column("mfa_required", Integer, nullable=False, server_default="0"),
    Column("mfa_exempt_until", String(40)),
    Column("mfa_exemption_used", Integer, nullable=False, server_default="0"),
    Column("mfa_last_used_step", Integer),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("account_locked", Integer, nullable=False, server_default="0"),
    Column("lock_expires_at", String(40)),  # NULL + locked = permanent lock
    Column("last_failed_login", String(40)),
    Column("change_password_required", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_signing_keys = Table(
    "signing_keys",
    _metadata,
    Column("key_id", String(32), primary_key=True),
    Column("secret_encrypted", Text, nullable=False),
    Column("status", String(10), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("grace_expires_at", String(40)),
    Column("retired_at", String(40)),
    Index(
        "uq_signing_keys_single_active",
        "status",
        unique=True,
        sqlite_where=text("status = 'active'"),
        postgresql_where=text("status = 'active'"),
    ),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FailureUpdate:
    """Counter state returned by the atomic failed-login statement."""

    attempts: int
    locked: bool
    lock_expires_at: datetime | None
    just_locked: bool


class StaleKeyRingError(Exception):
    """The active key changed underneath a rotation (another worker rotated)."""


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore("sqlite:///qualibrite_security.db")
        account_id = store.create_account(Account(email="a@b.test", role=Role.PATIENT, password_hash=h))
        account = store.get_by_email("A@B.test")
        store.close()
    """

    # Columns update_account() may touch. Lockout and MFA state have
    # dedicated conditional statements and are deliberately absent.
    _MUTABLE_FIELDS = frozenset({"role", "is_active", "is_superadmin", "password_hash", "change_password_required"})

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        self.engine: Engine = _make_engine(db_url)
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists
        (compared case-insensitively).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    password_hash=account.password_hash,
                    role=account.role.value,
                    is_superadmin=1 if account.is_superadmin else 0,
                    is_active=1 if account.is_active else 0,
                    mfa_required=1 if account.mfa_required else 0,
                    change_password_required=1 if account.change_password_required else 0,
                    mfa_backup_codes="[]",
                    created_at=to_iso(self._clock()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_locked(self) -> list[Account]:
        """Return every account whose locked flag is set, oldest failure first.

        Locks that have expired but were not yet lazily cleared are included;
        callers that need the effective state go through the lockout engine.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.account_locked == 1).order_by(_accounts.c.last_failed_login)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    def list_by_role(self, role: Role) -> list[Account]:
        """Every account with the given role, by id. Superadmins are listed under their base role."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.role == Role(role).value).order_by(_accounts.c.id)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update profile fields on an existing account.

        Accepted fields: role, is_active, is_superadmin, password_hash,
        change_password_required. Unknown fields raise ValueError.

        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        for flag in ("is_active", "is_superadmin", "change_password_required"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, account_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(last_login=to_iso(self._clock()))
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Lockout state
    # ------------------------------------------------------------------

    def record_failure(self, account_id: int, threshold: int, lock_until: datetime) -> FailureUpdate | None:
        """Count one failed login and lock the account if this crosses threshold.

        The increment and the lock run in one transaction, so the write lock
        taken by the increment serializes concurrent failures for the
        account: each sees the count its own increment produced, and only
        the caller whose conditional lock statement matched an unlocked row
        reports just_locked. An already-locked account keeps its original
        expiry.

        Returns None if account_id does not exist.
        """
        increment = (
            _accounts.update()
            .where(_accounts.c.id == account_id)
            .values(
                failed_login_attempts=_accounts.c.failed_login_attempts + 1,
                last_failed_login=to_iso(self._clock()),
            )
            .returning(
                _accounts.c.failed_login_attempts,
                _accounts.c.account_locked,
                _accounts.c.lock_expires_at,
            )
        )
        with self.engine.begin() as conn:
            row = conn.execute(increment).first()
            if row is None:
                return None
            attempts, locked, lock_expires_at = row.failed_login_attempts, bool(row.account_locked), row.lock_expires_at
            just_locked = False
            if not locked and attempts >= threshold:
                result = conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == account_id, _accounts.c.account_locked == 0)
                    .values(account_locked=1, lock_expires_at=to_iso(lock_until))
                )
                just_locked = result.rowcount == 1
                if just_locked:
                    locked, lock_expires_at = True, to_iso(lock_until)
        return FailureUpdate(
            attempts=attempts,
            locked=locked,
            lock_expires_at=from_iso(lock_expires_at),
            just_locked=just_locked,
        )

    def reset_failures(self, account_id: int) -> bool:
        """Zero the failure counter. Does not touch the lock flag."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(failed_login_attempts=0)
            )
            conn.commit()
        return result.rowcount > 0

    def clear_expired_lock(self, account_id: int, now: datetime) -> bool:
        """Unlock an account whose timed lock has passed. True only for the caller that cleared it."""
        stmt = (
            _accounts.update()
            .where(
                _accounts.c.id == account_id,
                _accounts.c.account_locked == 1,
                _accounts.c.lock_expires_at.is_not(None),
                _accounts.c.lock_expires_at <= to_iso(now),
            )
            .values(account_locked=0, lock_expires_at=None, failed_login_attempts=0)
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount == 1

    def unlock(self, account_id: int) -> bool:
        """Clear lock and counter unconditionally (admin or operator action)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(account_locked=0, lock_expires_at=None, failed_login_attempts=0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # MFA state
    # ------------------------------------------------------------------

    def set_pending_mfa_secret(self, account_id: int, secret: str) -> bool:
        """Store a freshly generated secret awaiting first-code confirmation.

        Refuses to overwrite the secret of an enrolled account.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id, _accounts.c.mfa_enabled == 0)
                .values(mfa_secret=secret, mfa_backup_codes="[]", mfa_last_used_step=None)
            )
            conn.commit()
        return result.rowcount == 1

    def enable_mfa(self, account_id: int, secret: str, backup_code_hashes: list[str]) -> bool:
        """Flip a pending enrollment to enabled, only if the secret is still the one verified."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(
                    _accounts.c.id == account_id,
                    _accounts.c.mfa_enabled == 0,
                    _accounts.c.mfa_secret == secret,
                )
                .values(mfa_enabled=1, mfa_backup_codes=json.dumps(backup_code_hashes))
            )
            conn.commit()
        return result.rowcount == 1

    def clear_mfa(self, account_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(mfa_enabled=0, mfa_secret=None, mfa_backup_codes="[]", mfa_last_used_step=None)
            )
            conn.commit()
        return result.rowcount > 0

    def record_totp_step(self, account_id: int, step: int) -> bool:
        """Advance the replay high-water mark. False if step was already used."""
        stmt = (
            _accounts.update()
            .where(
                _accounts.c.id == account_id,
                or_(_accounts.c.mfa_last_used_step.is_(None), _accounts.c.mfa_last_used_step < step),
            )
            .values(mfa_last_used_step=step)
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount == 1

    def consume_backup_code(self, account_id: int, code_hash: str, attempts: int = 3) -> bool:
        """Remove one backup-code digest. True only for the caller that removed it.

        The list is rewritten with a compare-and-set on its previous value. A
        concurrent consumption of a different code invalidates the snapshot, so
        the read is retried; a concurrent consumption of the same code removes
        it from the fresh read and this call returns False.
        """
        for _ in range(attempts):
            with self.engine.connect() as conn:
                current = conn.execute(
                    select(_accounts.c.mfa_backup_codes).where(_accounts.c.id == account_id)
                ).scalar()
                if current is None:
                    return False
                codes = json.loads(current)
                if code_hash not in codes:
                    return False
                codes.remove(code_hash)
                result = conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == account_id, _accounts.c.mfa_backup_codes == current)
                    .values(mfa_backup_codes=json.dumps(codes))
                )
                conn.commit()
            if result.rowcount == 1:
                return True
        return False

    def set_mfa_required(self, account_id: int, required: bool) -> bool:
        """Set the mandatory-MFA flag and reset any exemption bookkeeping."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(mfa_required=1 if required else 0, mfa_exempt_until=None, mfa_exemption_used=0)
            )
            conn.commit()
        return result.rowcount > 0

    def grant_mfa_exemption(self, account_id: int, until: datetime) -> bool:
        """Record a one-time exemption. False if the account already used it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id, _accounts.c.mfa_exemption_used == 0)
                .values(mfa_exempt_until=to_iso(until), mfa_exemption_used=1)
            )
            conn.commit()
        return result.rowcount == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


def _fernet_for(master_key: str) -> Fernet:
    """Derive the at-rest encryption key for signing secrets from SECRET_KEY."""
    digest = hashlib.sha256(master_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class SigningKeyStore:
    """Repository for the signing-key ring.

    Usage:
        keys = SigningKeyStore("sqlite:///qualibrite_security.db", master_key=settings.secret_key)
        ring = keys.load_all()
    """

    def __init__(self, db_url: str, master_key: str) -> None:
        self.engine: Engine = _make_engine(db_url)
        self._fernet = _fernet_for(master_key)

    def load_all(self) -> list[SigningKey]:
        """Return every readable key, oldest first.

        A key that cannot be decrypted (the master key changed) can never
        validate a token again, so it is retired in place and skipped.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(_signing_keys.select().order_by(_signing_keys.c.created_at)).fetchall()
        keys: list[SigningKey] = []
        unreadable: list[str] = []
        for row in rows:
            try:
                keys.append(_row_to_key(row, self._fernet))
            except InvalidToken:
                unreadable.append(row.key_id)
        if unreadable:
            logger.warning("Retiring %d signing key(s) that the current SECRET_KEY cannot decrypt", len(unreadable))
            with self.engine.connect() as conn:
                conn.execute(
                    _signing_keys.update()
                    .where(_signing_keys.c.key_id.in_(unreadable), _signing_keys.c.status != KeyStatus.RETIRED.value)
                    .values(status=KeyStatus.RETIRED.value, grace_expires_at=None)
                )
                conn.commit()
        return keys

    def insert_active(self, key: SigningKey) -> None:
        """Seed the first active key.

        Raises sqlalchemy.exc.IntegrityError if another worker seeded first.
        """
        with self.engine.connect() as conn:
            conn.execute(_signing_keys.insert().values(**self._key_values(key)))
            conn.commit()

    def rotate(self, new_key: SigningKey, old_key_id: str, grace_expires_at: datetime) -> None:
        """Demote the active key to grace and insert its successor in one transaction.

        Raises StaleKeyRingError if old_key_id is no longer the active key.
        """
        with self.engine.begin() as conn:
            demoted = conn.execute(
                _signing_keys.update()
                .where(_signing_keys.c.key_id == old_key_id, _signing_keys.c.status == KeyStatus.ACTIVE.value)
                .values(status=KeyStatus.GRACE.value, grace_expires_at=to_iso(grace_expires_at))
            )
            if demoted.rowcount != 1:
                raise StaleKeyRingError(f"{old_key_id} is no longer the active key")
            conn.execute(_signing_keys.insert().values(**self._key_values(new_key)))

    def retire_expired(self, now: datetime) -> list[str]:
        """Retire grace keys whose window has closed. Returns only the ids this call retired."""
        stmt = (
            _signing_keys.update()
            .where(
                _signing_keys.c.status == KeyStatus.GRACE.value,
                _signing_keys.c.grace_expires_at <= to_iso(now),
            )
            .values(status=KeyStatus.RETIRED.value, retired_at=to_iso(now))
            .returning(_signing_keys.c.key_id)
        )
        with self.engine.connect() as conn:
            retired = [row.key_id for row in conn.execute(stmt).fetchall()]
            conn.commit()
        return retired

    def close(self) -> None:
        self.engine.dispose()

    def _key_values(self, key: SigningKey) -> dict:
        return {
            "key_id": key.key_id,
            "secret_encrypted": self._fernet.encrypt(key.secret.encode("utf-8")).decode("ascii"),
            "status": key.status.value,
            "created_at": to_iso(key.created_at),
            "grace_expires_at": to_iso(key.grace_expires_at) if key.grace_expires_at else None,
            "retired_at": to_iso(key.retired_at) if key.retired_at else None,
        }


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        role=Role(row.role),
        password_hash=row.password_hash,
        is_superadmin=bool(row.is_superadmin),
        is_active=bool(row.is_active),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        mfa_backup_codes=tuple(json.loads(row.mfa_backup_codes)) if row.mfa_backup_codes else (),
        mfa_required=bool(row.mfa_required),
        mfa_exempt_until=from_iso(row.mfa_exempt_until),
        mfa_exemption_used=bool(row.mfa_exemption_used),
        mfa_last_used_step=row.mfa_last_used_step,
        failed_login_attempts=row.failed_login_attempts,
        account_locked=bool(row.account_locked),
        lock_expires_at=from_iso(row.lock_expires_at),
        last_failed_login=from_iso(row.last_failed_login),
        change_password_required=bool(row.change_password_required),
        created_at=from_iso(row.created_at),
        last_login=from_iso(row.last_login),
    )


def _row_to_key(row, fernet: Fernet) -> SigningKey:
    return SigningKey(
        key_id=row.key_id,
        secret=fernet.decrypt(row.secret_encrypted.encode("ascii")).decode("utf-8"),
        status=KeyStatus(row.status),
        created_at=from_iso(row.created_at),
        grace_expires_at=from_iso(row.grace_expires_at),
        retired_at=from_iso(row.retired_at),
    )
