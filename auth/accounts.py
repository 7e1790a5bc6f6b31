"""
auth/accounts.py -- Account lifecycle: self-registration, staff creation,
password change, admin-issued temporary passwords, and the read-only
security views behind the admin console.

Password policy is enforced at the HTTP boundary (Pydantic validators call
auth.tokens.validate_password_strength) and again here, so the operator
console and tests cannot create an account with a weak password either.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from audit.models import EventType, Outcome, Severity
from audit.store import AuditLog
from auth import policy
from auth.models import Account, AuthErrorCode, Rejected, Role
from auth.store import AccountStore, normalize_email
from auth.tokens import generate_temporary_password, hash_password, validate_password_strength, verify_password

logger = logging.getLogger("qualibrite.auth.accounts")

# Roles that must use MFA from their first login.
MFA_MANDATORY_ROLES = frozenset({Role.ADMIN, Role.IT_SUPPORT})


class WeakPasswordError(ValueError):
    """Raised when a password fails validate_password_strength()."""


class AccountService:
    def __init__(self, store: AccountStore, audit: AuditLog) -> None:
        self._store = store
        self._audit = audit

    def register(self, email: str, password: str, ip_address: str | None = None) -> Account | None:
        """Create a patient account. Returns None if the email is already registered.

        Raises WeakPasswordError for a password that fails the policy.
        """
        problems = validate_password_strength(password)
        if problems:
            raise WeakPasswordError("Password needs " + ", ".join(problems) + ".")
        try:
            account_id = self._store.create_account(
                Account(email=email, role=Role.PATIENT, password_hash=hash_password(password))
            )
        except IntegrityError:
            logger.info("Registration refused: email already registered")
            return None
        self._audit.record(
            EventType.ACCOUNT_CREATED,
            "Patient account registered",
            outcome=Outcome.SUCCESS,
            user_id=account_id,
            ip_address=ip_address,
            details={"role": Role.PATIENT.value, "self_registered": True},
        )
        return self._store.get_by_id(account_id)

    def create_staff_account(
        self,
        email: str,
        role: Role,
        acting_admin_id: int | None,
        *,
        password: str | None = None,
        is_superadmin: bool = False,
        ip_address: str | None = None,
    ) -> tuple[Account, str | None] | Rejected:
        """Create an account on behalf of an admin or the operator console.

        Without an explicit password a temporary one is generated and
        returned; the account must change it on first login. Admin and IT
        support accounts start with MFA required. Superadmins can only be
        created from the operator console.
        """
        actor = self._store.get_by_id(acting_admin_id) if acting_admin_id is not None else None
        allowed = policy.can_create_role(actor, role) and (not is_superadmin or acting_admin_id is None)
        if (acting_admin_id is not None and actor is None) or not allowed:
            self._audit.record(
                EventType.ACCOUNT_CREATED,
                f"Refused: insufficient privilege to create a {role.value} account",
                outcome=Outcome.DENIED,
                severity=Severity.HIGH,
                user_id=acting_admin_id,
                ip_address=ip_address,
                details={"role": role.value, "email": normalize_email(email)},
            )
            return Rejected(AuthErrorCode.UNAUTHORIZED, "You are not allowed to create this account.")

        temporary = None
        if password is None:
            password = temporary = generate_temporary_password()
        problems = validate_password_strength(password)
        if problems:
            raise WeakPasswordError("Password needs " + ", ".join(problems) + ".")

        try:
            account_id = self._store.create_account(
                Account(
                    email=email,
                    role=role,
                    password_hash=hash_password(password),
                    is_superadmin=is_superadmin,
                    mfa_required=is_superadmin or role in MFA_MANDATORY_ROLES,
                    change_password_required=temporary is not None,
                )
            )
        except IntegrityError:
            self._audit.record(
                EventType.ACCOUNT_CREATED,
                "Account creation failed: email already registered",
                outcome=Outcome.FAILURE,
                user_id=acting_admin_id,
                ip_address=ip_address,
                details={"role": role.value},
            )
            return Rejected(AuthErrorCode.ACCOUNT_EXISTS, "An account with this email already exists.")

        self._audit.record(
            EventType.ACCOUNT_CREATED,
            f"{role.value} account created for {normalize_email(email)}",
            outcome=Outcome.SUCCESS,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
            details={"role": role.value, "superadmin": is_superadmin, "temporary_password": temporary is not None},
        )
        return self._store.get_by_id(account_id), temporary

    def change_password(
        self, account_id: int, current_password: str, new_password: str, ip_address: str | None = None
    ) -> Account | Rejected:
        """Replace the password after re-checking the current one.

        Raises WeakPasswordError for a new password that fails the policy.
        """
        account = self._store.get_by_id(account_id)
        if account is None or not verify_password(current_password, account.password_hash):
            self._audit.record(
                EventType.PASSWORD_CHANGED,
                "Password change refused: current password incorrect",
                outcome=Outcome.FAILURE,
                severity=Severity.LOW,
                user_id=account_id,
                ip_address=ip_address,
            )
            return Rejected(AuthErrorCode.INVALID_CREDENTIALS, "Current password is incorrect.")
        problems = validate_password_strength(new_password)
        if problems:
            raise WeakPasswordError("Password needs " + ", ".join(problems) + ".")
        if verify_password(new_password, account.password_hash):
            raise WeakPasswordError("New password must differ from the current password.")

        self._store.update_account(account_id, password_hash=hash_password(new_password), change_password_required=False)
        self._audit.record(
            EventType.PASSWORD_CHANGED,
            "Password changed",
            outcome=Outcome.SUCCESS,
            user_id=account_id,
            ip_address=ip_address,
            details={"was_required": account.change_password_required},
        )
        return self._store.get_by_id(account_id)

    # ------------------------------------------------------------------
    # Administrative
    # ------------------------------------------------------------------

    def issue_temporary_password(
        self, account_id: int, acting_admin_id: int | None, ip_address: str | None = None
    ) -> tuple[Account, str] | Rejected:
        """Replace a user's password with a generated one they must change at next login.

        Recovery for a user who cannot sign in. The lock state is left to
        the lockout engine; an admin unlocks separately if needed.
        """
        target, rejected = policy.authorize_target(
            self._store,
            self._audit,
            EventType.PASSWORD_RESET,
            account_id,
            acting_admin_id,
            ip_address,
            check=policy.can_reset_password,
        )
        if rejected is not None:
            return rejected
        temporary = generate_temporary_password()
        self._store.update_account(account_id, password_hash=hash_password(temporary), change_password_required=True)
        logger.warning("Temporary password issued for account %s", account_id)
        self._audit.record(
            EventType.PASSWORD_RESET,
            f"Temporary password issued for {target.email}",
            outcome=Outcome.SUCCESS,
            user_id=acting_admin_id,
            target_user_id=account_id,
            ip_address=ip_address,
            details={"role": target.role.value, "account_locked": target.account_locked},
        )
        return self._store.get_by_id(account_id), temporary

    def account_details(
        self, account_id: int, acting_user_id: int | None, ip_address: str | None = None
    ) -> Account | Rejected:
        """Full security state of one account for the admin console. The lookup is audited."""
        target, rejected = policy.authorize_target(
            self._store,
            self._audit,
            EventType.ACCOUNT_DETAILS_VIEWED,
            account_id,
            acting_user_id,
            ip_address,
            check=policy.can_view_account,
        )
        if rejected is not None:
            return rejected
        self._audit.record(
            EventType.ACCOUNT_DETAILS_VIEWED,
            f"Security details viewed for {target.email}",
            outcome=Outcome.SUCCESS,
            user_id=acting_user_id,
            target_user_id=account_id,
            ip_address=ip_address,
        )
        return target

    def security_summary(
        self, role: Role, acting_user_id: int | None, ip_address: str | None = None
    ) -> list[Account] | Rejected:
        """Security state of every account with `role`."""
        actor = self._store.get_by_id(acting_user_id) if acting_user_id is not None else None
        if (acting_user_id is not None and actor is None) or not policy.can_view_account(actor):
            self._audit.record(
                EventType.ACCOUNT_DETAILS_VIEWED,
                f"Refused: security summary for role {role.value}",
                outcome=Outcome.DENIED,
                severity=Severity.HIGH,
                user_id=acting_user_id,
                ip_address=ip_address,
                details={"role": role.value},
            )
            return Rejected(AuthErrorCode.UNAUTHORIZED, "You are not allowed to view these accounts.")
        accounts = self._store.list_by_role(role)
        self._audit.record(
            EventType.ACCOUNT_DETAILS_VIEWED,
            f"Security summary viewed for role {role.value}",
            outcome=Outcome.SUCCESS,
            user_id=acting_user_id,
            ip_address=ip_address,
            details={"role": role.value, "returned": len(accounts)},
        )
        return accounts
