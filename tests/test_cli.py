"""
tests/test_cli.py -- Operator console (main.py) against an injected service bundle.

The console acts with no account, so it is the one path that can create a
superadmin or recover a locked superadmin.
"""

from __future__ import annotations

import pytest

from audit.models import EventType
from auth.models import Role
from main import main
from tests.conftest import add_account, enroll_mfa


def test_create_superadmin(services, capsys) -> None:
    assert main(["create-admin", "Root@Example.com", "--superadmin"], services=services) == 0
    out = capsys.readouterr().out
    assert "Created superadmin account root@example.com" in out
    temporary = out.split("Temporary password: ")[1].split()[0]

    account = services.account_store.get_by_email("root@example.com")
    assert account.is_superadmin
    assert account.mfa_required
    assert account.change_password_required
    result = services.authenticator.authenticate("root@example.com", temporary)
    assert result.account.id == account.id


def test_create_it_support(services, capsys) -> None:
    assert main(["create-admin", "it@example.com", "--role", "it_support"], services=services) == 0
    assert services.account_store.get_by_email("it@example.com").role is Role.IT_SUPPORT


def test_create_duplicate_fails(services, capsys) -> None:
    add_account(services, "dup@example.com")
    assert main(["create-admin", "dup@example.com"], services=services) == 1
    assert "already exists" in capsys.readouterr().err


def test_role_choices_limited(services) -> None:
    with pytest.raises(SystemExit):
        main(["create-admin", "x@example.com", "--role", "patient"], services=services)


def test_unlock_superadmin(services, capsys) -> None:
    """A locked superadmin can only be recovered here."""
    root = add_account(services, "root@example.com", Role.ADMIN, is_superadmin=True)
    for _ in range(5):
        services.lockout.record_failure(root.id)

    assert main(["locked"], services=services) == 0
    assert "root@example.com" in capsys.readouterr().out

    assert main(["unlock", "root@example.com"], services=services) == 0
    assert not services.lockout.is_locked(root.id)
    event = services.audit.query(event_type=EventType.ACCOUNT_UNLOCKED)[0]
    assert event.user_id is None
    assert event.target_user_id == root.id


def test_unknown_email(services, capsys) -> None:
    assert main(["unlock", "ghost@example.com"], services=services) == 1
    assert "No account found" in capsys.readouterr().err


def test_reset_mfa(services, clock, capsys) -> None:
    acct = add_account(services, "p@example.com")
    enroll_mfa(services, clock, acct.id)
    assert main(["reset-mfa", "p@example.com"], services=services) == 0
    assert not services.account_store.get_by_id(acct.id).mfa_enabled


def test_no_locked_accounts(services, capsys) -> None:
    assert main(["locked"], services=services) == 0
    assert "No locked accounts." in capsys.readouterr().out


def test_rotate_sweep_and_status(services, clock, capsys) -> None:
    old_key = services.key_manager.status().active_key_id
    assert main(["rotate-key", "--grace-days", "1"], services=services) == 0
    new_key = services.key_manager.status().active_key_id
    assert new_key in capsys.readouterr().out

    assert main(["key-status"], services=services) == 0
    out = capsys.readouterr().out
    assert f"Active key:       {new_key}" in out
    assert f"Next grace expiry: {old_key}" in out

    clock.advance(days=2)
    assert main(["sweep-keys"], services=services) == 0
    assert old_key in capsys.readouterr().out


def test_rotate_bad_grace(services, capsys) -> None:
    assert main(["rotate-key", "--grace-days", "120"], services=services) == 1
    assert "between 1 and 90" in capsys.readouterr().err
