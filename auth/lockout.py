"""
auth/lockout.py -- Failed-login counting, automatic locking, lazy unlock.

The counter and lock transitions themselves are single conditional UPDATE
statements in AccountStore; this module decides when to run them and which
transitions get an audit record:

  ACCOUNT_LOCKED     once, by the failure that crossed the threshold.
  ACCOUNT_UNLOCKED   once, by whichever caller cleared an expired lock, or
                     by an admin/operator unlock.
  FAILED_ATTEMPTS_RESET  admin/operator counter reset.

A lock is never cleared by a successful password; record_success() only
resets the counter and is never reached while the account is locked.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from audit.models import EventType, Outcome, Severity
from audit.store import AuditLog
from auth import policy
from auth.models import Account, Rejected
from auth.store import AccountStore, FailureUpdate
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("qualibrite.auth.lockout")


class LockoutPolicyEngine:
    def __init__(self, store: AccountStore, audit: AuditLog, settings: Settings, clock: Clock = utcnow) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings
        self._clock = clock

    @property
    def threshold(self) -> int:
        return self._settings.lockout_threshold

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self._settings.lockout_duration_minutes)

    def record_failure(self, account_id: int, ip_address: str | None = None) -> FailureUpdate | None:
        """Count one failed login. Returns None if the account does not exist."""
        update = self._store.record_failure(account_id, self.threshold, self._clock() + self.lock_duration)
        if update is not None and update.just_locked:
            logger.warning("Account %s locked after %d failed attempts", account_id, update.attempts)
            self._audit.record(
                EventType.ACCOUNT_LOCKED,
                f"Account locked after {update.attempts} failed login attempts",
                outcome=Outcome.WARNING,
                target_user_id=account_id,
                ip_address=ip_address,
                details={
                    "failed_attempts": update.attempts,
                    "lock_expires_at": update.lock_expires_at.isoformat() if update.lock_expires_at else None,
                    "lock_duration_minutes": self._settings.lockout_duration_minutes,
                },
            )
        return update

    def record_success(self, account_id: int) -> None:
        self._store.reset_failures(account_id)

    def is_locked(self, account_id: int) -> bool:
        """Effective lock state. An expired lock is cleared here, on first observation."""
        account = self._store.get_by_id(account_id)
        if account is None or not account.account_locked:
            return False
        if account.lock_expires_at is None:
            return True
        now = self._clock()
        if now < account.lock_expires_at:
            return True
        if self._store.clear_expired_lock(account_id, now):
            self._audit.record(
                EventType.ACCOUNT_UNLOCKED,
                "Lock expired; account unlocked automatically",
                outcome=Outcome.SUCCESS,
                target_user_id=account_id,
                details={"automatic": True, "lock_expired_at": account.lock_expires_at.isoformat()},
            )
        return False

    def list_locked(self) -> list[Account]:
        """Accounts whose lock is still in force. Expired locks are cleared as a side effect."""
        return [a for a in self._store.list_locked() if self.is_locked(a.id)]

    # ------------------------------------------------------------------
    # Admin / operator actions
    # ------------------------------------------------------------------

    def admin_unlock(
        self, account_id: int, acting_admin_id: int | None, ip_address: str | None = None
    ) -> Account | Rejected:
        """Clear lock and counter. acting_admin_id None means the operator console."""
        target, rejected = policy.authorize_target(
            self._store, self._audit, EventType.ACCOUNT_UNLOCKED, account_id, acting_admin_id, ip_address
        )
        if rejected is not None:
            return rejected
        self._store.unlock(account_id)
        self._audit.record(
            EventType.ACCOUNT_UNLOCKED,
            f"Account {target.email} unlocked by {'administrator' if acting_admin_id else 'operator console'}",
            outcome=Outcome.SUCCESS,
            severity=Severity.MEDIUM,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
            details={"automatic": False, "was_locked": target.account_locked},
        )
        return self._store.get_by_id(account_id)

    def admin_reset_failed_attempts(
        self, account_id: int, acting_admin_id: int | None, ip_address: str | None = None
    ) -> Account | Rejected:
        """Zero the counter without touching the lock."""
        target, rejected = policy.authorize_target(
            self._store, self._audit, EventType.FAILED_ATTEMPTS_RESET, account_id, acting_admin_id, ip_address
        )
        if rejected is not None:
            return rejected
        self._store.reset_failures(account_id)
        self._audit.record(
            EventType.FAILED_ATTEMPTS_RESET,
            f"Failed login counter reset for {target.email}",
            outcome=Outcome.SUCCESS,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
            details={"previous_attempts": target.failed_login_attempts},
        )
        return self._store.get_by_id(account_id)

