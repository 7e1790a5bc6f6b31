"""
auth/policy.py -- Who may perform security operations on whom.

Every admin-facing service method resolves its actor and calls one of these
predicates before touching state. The HTTP dependencies apply a coarse role
gate first; these checks are the authoritative, target-aware ones.

Actor None means the operator console (main.py). The CLI runs with direct
database access on the host, so it is trusted for every operation,
including the superadmin break-glass actions HTTP callers can never reach.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from audit.models import EventType, Outcome, Severity
from auth.models import Account, AuthErrorCode, Rejected, Role

if TYPE_CHECKING:
    from audit.store import AuditLog
    from auth.store import AccountStore

SECURITY_OPERATOR_ROLES = frozenset({Role.ADMIN, Role.IT_SUPPORT})


def is_security_operator(actor: Account) -> bool:
    """Admin console access: admins, IT support and superadmins."""
    return actor.is_active and (actor.is_superadmin or actor.role in SECURITY_OPERATOR_ROLES)


def can_manage_account(actor: Account | None, target: Account) -> bool:
    """Unlock, reset counters, reset MFA.

    Admin targets need a superadmin actor. Superadmin targets are only
    recoverable from the operator console. An operator never acts on their
    own account here; self-service routes carry their own checks.
    """
    if actor is None:
        return True
    if not is_security_operator(actor) or actor.id == target.id:
        return False
    if target.is_superadmin:
        return False
    if target.role is Role.ADMIN and not actor.is_superadmin:
        return False
    return True


def can_set_mfa_requirement(actor: Account | None, target: Account) -> bool:
    """Changing MFA policy is admin-only; IT support may not."""
    if actor is None:
        return True
    if not actor.is_active or not (actor.is_superadmin or actor.role is Role.ADMIN):
        return False
    return can_manage_account(actor, target)


def can_reset_password(actor: Account | None, target: Account) -> bool:
    """Issuing a temporary password is admin-only, with the same target rules as recovery."""
    if actor is None:
        return True
    if not actor.is_active or not (actor.is_superadmin or actor.role is Role.ADMIN):
        return False
    return can_manage_account(actor, target)


def can_view_account(actor: Account | None, target: Account | None = None) -> bool:
    """Read-only security details: any security operator, any target."""
    return actor is None or is_security_operator(actor)


def can_manage_keys(actor: Account | None) -> bool:
    """Signing-key rotation and key-ring diagnostics."""
    return actor is None or (actor.is_active and actor.is_superadmin)


def can_create_role(actor: Account | None, role: Role) -> bool:
    """Staff accounts are created by admins; admin accounts only by a superadmin."""
    if actor is None:
        return True
    if not actor.is_active or not (actor.is_superadmin or actor.role is Role.ADMIN):
        return False
    return role is not Role.ADMIN or actor.is_superadmin


def authorize_target(
    store: AccountStore,
    audit: AuditLog,
    event_type: EventType,
    account_id: int,
    acting_admin_id: int | None,
    ip_address: str | None,
    check: Callable[[Account | None, Account], bool] = can_manage_account,
) -> tuple[Account | None, Rejected | None]:
    """Resolve target and actor, apply `check`, and audit a refusal.

    Returns (target, None) when the action may proceed, otherwise
    (None, Rejected) with the denial already recorded under event_type.
    """
    target = store.get_by_id(account_id)
    if target is None:
        audit.record(
            event_type,
            "Target account not found",
            outcome=Outcome.FAILURE,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
        )
        return None, Rejected(AuthErrorCode.NOT_FOUND, "Account not found.")
    actor = store.get_by_id(acting_admin_id) if acting_admin_id is not None else None
    if (acting_admin_id is not None and actor is None) or not check(actor, target):
        audit.record(
            event_type,
            f"Refused: insufficient privilege to act on {target.email}",
            outcome=Outcome.DENIED,
            severity=Severity.HIGH,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
        )
        return None, Rejected(AuthErrorCode.UNAUTHORIZED, "You are not allowed to manage this account.")
    return target, None
