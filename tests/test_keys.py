"""
tests/test_keys.py -- Unit tests for SigningKeyManager and SigningKeyStore.

Covers:
  - issue/validate round trip, token type, expiry by the injected clock
  - rotation grace: old tokens valid until graceExpiresAt, then refused
  - sweep: idempotent, retires only expired grace keys, audits KEY_RETIRED
  - exactly one active key, enforced by the store as well as the manager
  - a second worker picks up a rotation it did not perform
  - concurrent rotate() calls: one wins, the other is refused
"""

from __future__ import annotations

import threading

import pytest
from jose import jwt
from sqlalchemy.exc import IntegrityError

from audit.models import EventType, Outcome, Severity
from auth.keys import SigningKeyManager
from auth.models import AuthErrorCode, KeyStatus, Rejected, Role, SigningKey, TokenClaims
from auth.services import build_services
from core.config import get_settings
from tests.conftest import FakeClock, make_services, memory_url


class TestIssueAndValidate:
    def test_round_trip(self, services) -> None:
        token = services.key_manager.issue_token(7, Role.PROVIDER)
        claims = services.key_manager.validate_token(token)
        assert isinstance(claims, TokenClaims)
        assert claims.account_id == 7
        assert claims.role is Role.PROVIDER
        assert claims.key_id == services.key_manager.status().active_key_id

    def test_token_carries_kid_header(self, services) -> None:
        token = services.key_manager.issue_token(1, Role.PATIENT)
        assert jwt.get_unverified_header(token)["kid"] == services.key_manager.status().active_key_id

    def test_expiry_judged_by_clock(self, services, clock) -> None:
        token = services.key_manager.issue_token(1, Role.PATIENT, expires_in=60)
        clock.advance(seconds=59)
        assert isinstance(services.key_manager.validate_token(token), TokenClaims)
        clock.advance(seconds=1)
        result = services.key_manager.validate_token(token)
        assert result.code is AuthErrorCode.TOKEN_INVALID

    def test_wrong_token_type(self, services) -> None:
        """A pending-MFA token is not a session token."""
        token = services.key_manager.issue_token(1, Role.PATIENT, token_type="mfa_pending", expires_in=300)
        assert isinstance(services.key_manager.validate_token(token), Rejected)
        assert isinstance(services.key_manager.validate_token(token, token_type="mfa_pending"), TokenClaims)

    def test_reserved_claims_not_overridable(self, services) -> None:
        token = services.key_manager.issue_token(1, Role.PATIENT, {"role": "admin", "remember_me": True})
        claims = services.key_manager.validate_token(token)
        assert claims.role is Role.PATIENT
        assert claims.extra == {"remember_me": True}

    def test_unknown_kid(self, services) -> None:
        forged = jwt.encode({"sub": "1"}, "x" * 64, algorithm="HS256", headers={"kid": "deadbeefdeadbeef"})
        assert services.key_manager.validate_token(forged).code is AuthErrorCode.KEY_NOT_FOUND

    def test_missing_kid_and_garbage(self, services) -> None:
        no_kid = jwt.encode({"sub": "1"}, "x" * 64, algorithm="HS256")
        assert services.key_manager.validate_token(no_kid).code is AuthErrorCode.TOKEN_INVALID
        assert services.key_manager.validate_token("not-a-token").code is AuthErrorCode.TOKEN_INVALID

    def test_tampered_signature(self, services) -> None:
        token = services.key_manager.issue_token(1, Role.PATIENT)
        head, body, sig = token.split(".")
        tampered = ".".join([head, body, ("A" if sig[0] != "A" else "B") + sig[1:]])
        assert services.key_manager.validate_token(tampered).code is AuthErrorCode.TOKEN_INVALID


class TestRotation:
    def test_old_token_valid_during_grace_then_invalid_after_sweep(self, services, clock) -> None:
        """Token issued before rotate() validates after it, and fails once grace ends and the sweep runs."""
        manager = services.key_manager
        old_key = manager.status().active_key_id
        token = manager.issue_token(1, Role.PATIENT, expires_in=30 * 86400)

        new_key = manager.rotate(grace_days=1, acting_admin_id=99)
        assert new_key != old_key
        assert isinstance(manager.validate_token(token), TokenClaims)
        assert manager.status().next_expiring_grace_key == old_key

        clock.advance(days=1, seconds=1)
        assert manager.sweep() == [old_key]
        assert manager.validate_token(token).code is AuthErrorCode.TOKEN_INVALID

    def test_expired_grace_key_refused_before_sweep(self, services, clock) -> None:
        manager = services.key_manager
        token = manager.issue_token(1, Role.PATIENT, expires_in=30 * 86400)
        manager.rotate(grace_days=1)
        clock.advance(days=2)
        assert manager.validate_token(token).code is AuthErrorCode.TOKEN_INVALID

    def test_new_tokens_use_new_key(self, services) -> None:
        new_key = services.key_manager.rotate()
        token = services.key_manager.issue_token(1, Role.PATIENT)
        assert jwt.get_unverified_header(token)["kid"] == new_key

    def test_rotation_audited_without_secret(self, services) -> None:
        old_key = services.key_manager.status().active_key_id
        new_key = services.key_manager.rotate(grace_days=3, acting_admin_id=5, ip_address="10.0.0.1")
        event = services.audit.query(event_type=EventType.KEY_ROTATED)[0]
        assert event.severity is Severity.MEDIUM
        assert event.outcome is Outcome.SUCCESS
        assert event.user_id == 5
        assert event.details["previous_key_id"] == old_key
        assert event.details["new_key_id"] == new_key
        assert event.details["grace_days"] == 3
        assert "secret" not in str(event.details).lower()

    @pytest.mark.parametrize("days", [0, 91, -1])
    def test_grace_period_bounds(self, services, days) -> None:
        """An out-of-range grace period is a typed, audited refusal; the ring is untouched."""
        before = services.key_manager.status().active_key_id
        result = services.key_manager.rotate(grace_days=days, acting_admin_id=5)
        assert isinstance(result, Rejected)
        assert result.code is AuthErrorCode.INVALID_GRACE_PERIOD
        assert services.key_manager.status().active_key_id == before
        denied = services.audit.query(event_type=EventType.KEY_ROTATED)[0]
        assert denied.outcome is Outcome.DENIED
        assert denied.user_id == 5
        assert denied.details == {"grace_days": days}

    def test_only_one_active_key(self, services) -> None:
        for _ in range(3):
            services.key_manager.rotate()
        statuses = [k.status for k in services.key_store.load_all()]
        assert statuses.count(KeyStatus.ACTIVE) == 1
        assert statuses.count(KeyStatus.GRACE) == 3

    def test_store_rejects_second_active_key(self, services, clock) -> None:
        """The partial unique index refuses a second ACTIVE row."""
        rogue = SigningKey(key_id="0123456789abcdef", secret="s" * 64, status=KeyStatus.ACTIVE, created_at=clock())
        with pytest.raises(IntegrityError):
            services.key_store.insert_active(rogue)


class TestSweep:
    def test_sweep_idempotent_and_audited(self, services, clock) -> None:
        manager = services.key_manager
        old_key = manager.status().active_key_id
        manager.rotate(grace_days=1)
        assert manager.sweep() == []

        clock.advance(days=1)
        assert manager.sweep() == [old_key]
        assert manager.sweep() == []

        retired = services.audit.query(event_type=EventType.KEY_RETIRED)
        assert len(retired) == 1
        assert retired[0].details["key_id"] == old_key
        assert {k.key_id: k.status for k in services.key_store.load_all()}[old_key] is KeyStatus.RETIRED

    def test_key_count_excludes_retired_and_expired(self, services, clock) -> None:
        manager = services.key_manager
        manager.rotate(grace_days=1)
        manager.rotate(grace_days=10)
        assert manager.status().key_count == 3
        clock.advance(days=2)
        assert manager.status().key_count == 2
        manager.sweep()
        assert manager.status().key_count == 2
        assert len(services.key_store.load_all()) == 3

    def test_sweep_leaves_unexpired_grace_keys(self, services, clock) -> None:
        manager = services.key_manager
        first = manager.status().active_key_id
        manager.rotate(grace_days=1)
        second = manager.status().active_key_id
        manager.rotate(grace_days=10)
        clock.advance(days=2)
        assert manager.sweep() == [first]
        statuses = {k.key_id: k.status for k in services.key_store.load_all()}
        assert statuses[second] is KeyStatus.GRACE


class TestMultipleWorkers:
    def test_second_worker_validates_after_unknown_kid_reload(self, clock) -> None:
        """Worker B reloads the ring when it sees a kid minted by worker A after B started."""
        url = memory_url("workers")
        a = make_services(clock, db_url=url)
        b = make_services(clock, db_url=url)
        try:
            assert a.key_manager.status().active_key_id == b.key_manager.status().active_key_id
            a.key_manager.rotate()
            token = a.key_manager.issue_token(3, Role.BILLING)
            clock.advance(seconds=10)  # past the reload throttle
            claims = b.key_manager.validate_token(token)
            assert isinstance(claims, TokenClaims)
            assert b.key_manager.status().active_key_id == a.key_manager.status().active_key_id
        finally:
            b.close()
            a.close()

    def test_stale_worker_rotation_refused(self, clock) -> None:
        """Worker B's rotation against an outdated ring is refused instead of forking the ring."""
        url = memory_url("stale")
        a = make_services(clock, db_url=url)
        b = make_services(clock, db_url=url)
        try:
            a.key_manager.rotate()
            result = b.key_manager.rotate()
            assert isinstance(result, Rejected)
            assert result.code is AuthErrorCode.ROTATION_IN_PROGRESS
            active = [k for k in a.key_store.load_all() if k.status is KeyStatus.ACTIVE]
            assert len(active) == 1
            # B reloaded during the refusal and can rotate now
            assert isinstance(b.key_manager.rotate(), str)
        finally:
            b.close()
            a.close()


class TestConcurrentRotation:
    def test_parallel_rotate_one_winner(self, tmp_path) -> None:
        """Concurrent rotate() calls on one manager never produce two active keys."""
        clock = FakeClock()
        services = make_services(clock, db_url=f"sqlite:///{tmp_path / 'keys.db'}")
        try:
            results: list[object] = []
            barrier = threading.Barrier(6)

            def rotate() -> None:
                barrier.wait()
                results.append(services.key_manager.rotate())

            threads = [threading.Thread(target=rotate) for _ in range(6)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert len(results) == 6
            winners = [r for r in results if isinstance(r, str)]
            assert winners
            assert all(r.code is AuthErrorCode.ROTATION_IN_PROGRESS for r in results if isinstance(r, Rejected))
            active = [k for k in services.key_store.load_all() if k.status is KeyStatus.ACTIVE]
            assert len(active) == 1
            assert active[0].key_id == services.key_manager.status().active_key_id
        finally:
            services.close()

    def test_validation_during_rotation(self, services) -> None:
        """Readers never observe a half-applied rotation."""
        manager: SigningKeyManager = services.key_manager
        token = manager.issue_token(1, Role.PATIENT)
        stop = threading.Event()
        failures: list[object] = []

        def validate_loop() -> None:
            while not stop.is_set():
                result = manager.validate_token(token)
                if not isinstance(result, TokenClaims):
                    failures.append(result)

        reader = threading.Thread(target=validate_loop)
        reader.start()
        try:
            for _ in range(5):
                manager.rotate()
        finally:
            stop.set()
            reader.join()
        assert failures == []


def test_master_key_change_reseeds_ring(clock) -> None:
    """Keys encrypted under a previous SECRET_KEY are retired and a fresh active key is seeded."""
    url = memory_url("masterkey")
    first = make_services(clock, db_url=url)
    try:
        token = first.key_manager.issue_token(1, Role.PATIENT)
        settings = get_settings().model_copy(update={"secret_key": "z" * 64})
        second = build_services(settings, db_url=url, clock=clock)
        try:
            assert second.key_manager.status().active_key_id != jwt.get_unverified_header(token)["kid"]
            assert second.key_manager.validate_token(token).code is AuthErrorCode.KEY_NOT_FOUND
        finally:
            second.close()
    finally:
        first.close()
