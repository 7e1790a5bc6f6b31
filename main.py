#!/usr/bin/env python3
"""
Qualibrite operator console -- break-glass account and key management.

Runs against the same database as the API, acting as the trusted operator
(no acting account). This is the only way to create or recover a superadmin.

Usage:
  python main.py create-admin ops@example.com
  python main.py create-admin root@example.com --superadmin
  python main.py unlock jane@example.com
  python main.py reset-mfa jane@example.com
  python main.py locked
  python main.py rotate-key --grace-days 7
  python main.py sweep-keys
  python main.py key-status

Environment variables:
  SECRET_KEY     Required. Same value as the API (encrypts signing keys at rest).
  DATABASE_URL   SQLAlchemy URL. Default: qualibrite_security.db beside the code
"""

import argparse
import logging
import sys
from typing import Optional

from auth.models import Rejected, Role
from auth.services import SecurityServices, build_services
from auth.store import normalize_email
from core.config import get_settings

logger = logging.getLogger("qualibrite.cli")


def _fail(message: str) -> int:
    print(f"  [!] {message}", file=sys.stderr)
    return 1


def _resolve(services: SecurityServices, email: str):
    account = services.account_store.get_by_email(normalize_email(email))
    if account is None:
        print(f"  [!] No account found for {email}.", file=sys.stderr)
    return account


def _create_admin(services: SecurityServices, args: argparse.Namespace) -> int:
    role = Role(args.role)
    result = services.accounts.create_staff_account(args.email, role, None, is_superadmin=args.superadmin)
    if isinstance(result, Rejected):
        return _fail(result.message)
    account, temporary = result
    kind = "superadmin" if account.is_superadmin else role.value
    print(f"Created {kind} account {account.email} (id {account.id}).")
    print(f"Temporary password: {temporary}")
    print("The password must be changed and MFA set up at first login.")
    return 0


def _unlock(services: SecurityServices, args: argparse.Namespace) -> int:
    account = _resolve(services, args.email)
    if account is None:
        return 1
    result = services.lockout.admin_unlock(account.id, None)
    if isinstance(result, Rejected):
        return _fail(result.message)
    print(f"Unlocked {result.email}.")
    return 0


def _reset_mfa(services: SecurityServices, args: argparse.Namespace) -> int:
    account = _resolve(services, args.email)
    if account is None:
        return 1
    result = services.mfa_enrollment.disable(account.id, acting_user_id=None)
    if isinstance(result, Rejected):
        return _fail(result.message)
    print(f"MFA cleared for {result.email}. They will re-enroll at next login if MFA is required.")
    return 0


def _locked(services: SecurityServices, args: argparse.Namespace) -> int:
    accounts = services.lockout.list_locked()
    if not accounts:
        print("No locked accounts.")
        return 0
    for a in accounts:
        until = a.lock_expires_at.isoformat() if a.lock_expires_at else "-"
        print(f"  {a.id:>6}  {a.email:<40}  attempts={a.failed_login_attempts}  until={until}")
    return 0


def _rotate_key(services: SecurityServices, args: argparse.Namespace) -> int:
    result = services.key_manager.rotate(args.grace_days)
    if isinstance(result, Rejected):
        return _fail(result.message)
    print(f"New active signing key: {result}")
    return 0


def _sweep_keys(services: SecurityServices, args: argparse.Namespace) -> int:
    retired = services.key_manager.sweep()
    print(f"Retired {len(retired)} key(s){': ' + ', '.join(retired) if retired else '.'}")
    return 0


def _key_status(services: SecurityServices, args: argparse.Namespace) -> int:
    status = services.key_manager.status()
    print(f"Active key:       {status.active_key_id} (age {status.active_key_age_seconds}s)")
    print(f"Keys in ring:     {status.key_count}")
    if status.next_expiring_grace_key:
        print(f"Next grace expiry: {status.next_expiring_grace_key} at {status.next_grace_expires_at.isoformat()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qualibrite-admin",
        description="Operator console for Qualibrite account security.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log service activity to stderr")
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("create-admin", help="Create a staff account with a temporary password")
    p.add_argument("email")
    p.add_argument(
        "--role",
        choices=[Role.ADMIN.value, Role.IT_SUPPORT.value],
        default=Role.ADMIN.value,
        help="Staff role (default: admin)",
    )
    p.add_argument("--superadmin", action="store_true", help="Grant superadmin (key rotation, admin recovery)")
    p.set_defaults(handler=_create_admin)

    p = sub.add_parser("unlock", help="Clear the lock and failed-attempt counter")
    p.add_argument("email")
    p.set_defaults(handler=_unlock)

    p = sub.add_parser("reset-mfa", help="Clear MFA enrollment for a lost device")
    p.add_argument("email")
    p.set_defaults(handler=_reset_mfa)

    p = sub.add_parser("locked", help="List currently locked accounts")
    p.set_defaults(handler=_locked)

    p = sub.add_parser("rotate-key", help="Rotate the token signing key")
    p.add_argument("--grace-days", type=int, default=None, metavar="N", help="Days the old key keeps validating")
    p.set_defaults(handler=_rotate_key)

    p = sub.add_parser("sweep-keys", help="Retire grace keys whose window has closed")
    p.set_defaults(handler=_sweep_keys)

    p = sub.add_parser("key-status", help="Show key ring diagnostics")
    p.set_defaults(handler=_key_status)
    return parser


def main(argv: Optional[list[str]] = None, services: Optional[SecurityServices] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)-5s %(name)s %(message)s",
    )
    logger.info("Operator command: %s", args.command)

    owned = services is None
    if owned:
        services = build_services(get_settings())
    try:
        return args.handler(services, args)
    finally:
        if owned:
            services.close()


if __name__ == "__main__":
    sys.exit(main())
