"""
tests/test_audit.py -- Unit tests for the AuditLog store.

Covers:
  - default severity per event type, with caller override
  - details round-trip through JSON, including non-JSON values
  - query filters (severity, type, user as actor or target, date range), newest first
  - pagination and summary counts
  - structured log line on the qualibrite.audit logger
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta

from audit.models import EventType, Outcome, Severity
from audit.store import AuditLog
from tests.conftest import FakeClock, memory_url


def _log(clock: FakeClock, suffix: str) -> AuditLog:
    return AuditLog(memory_url(f"audit_{suffix}"), clock)


class TestRecord:
    def test_default_and_override_severity(self, clock) -> None:
        audit = _log(clock, "severity")
        try:
            locked = audit.record(EventType.ACCOUNT_LOCKED, "locked", outcome=Outcome.WARNING)
            forced = audit.record(
                EventType.MFA_DISABLED, "forced", outcome=Outcome.SUCCESS, severity=Severity.HIGH
            )
            assert locked.severity is Severity.HIGH
            assert forced.severity is Severity.HIGH
            assert audit.record(EventType.MFA_DISABLED, "own", outcome=Outcome.SUCCESS).severity is Severity.MEDIUM
        finally:
            audit.close()

    def test_details_round_trip(self, clock) -> None:
        audit = _log(clock, "details")
        try:
            audit.record(
                EventType.KEY_ROTATED,
                "rotated",
                outcome=Outcome.SUCCESS,
                details={"grace_days": 3, "grace_expires_at": clock()},
            )
            stored = audit.query()[0]
            assert stored.details["grace_days"] == 3
            assert stored.details["grace_expires_at"] == str(clock())
            assert stored.timestamp == clock()
        finally:
            audit.close()

    def test_structured_log_line(self, clock, caplog) -> None:
        audit = _log(clock, "logline")
        try:
            with caplog.at_level(logging.INFO, logger="qualibrite.audit"):
                audit.record(EventType.LOGIN_FAILURE, "bad password", outcome=Outcome.FAILURE, user_id=4)
            payload = json.loads(caplog.records[-1].getMessage())
            assert payload["event_type"] == "LOGIN_FAILURE"
            assert payload["user_id"] == 4
            assert payload["outcome"] == "failure"
        finally:
            audit.close()


class TestQuery:
    def _seed(self, audit: AuditLog, clock: FakeClock) -> None:
        audit.record(EventType.LOGIN_FAILURE, "f1", outcome=Outcome.FAILURE, user_id=1)
        clock.advance(hours=1)
        audit.record(EventType.ACCOUNT_LOCKED, "lock", outcome=Outcome.WARNING, target_user_id=1)
        clock.advance(hours=1)
        audit.record(EventType.ACCOUNT_UNLOCKED, "unlock", outcome=Outcome.SUCCESS, user_id=9, target_user_id=1)
        clock.advance(hours=1)
        audit.record(EventType.LOGIN_SUCCESS, "ok", outcome=Outcome.SUCCESS, user_id=2)

    def test_newest_first(self, clock) -> None:
        audit = _log(clock, "order")
        try:
            self._seed(audit, clock)
            assert [e.message for e in audit.query()] == ["ok", "unlock", "lock", "f1"]
        finally:
            audit.close()

    def test_filters(self, clock) -> None:
        audit = _log(clock, "filters")
        try:
            start = clock()
            self._seed(audit, clock)
            assert [e.message for e in audit.query(severity=Severity.HIGH)] == ["lock"]
            assert [e.message for e in audit.query(event_type=EventType.LOGIN_SUCCESS)] == ["ok"]
            # user_id matches actor or target
            assert [e.message for e in audit.query(user_id=1)] == ["unlock", "lock", "f1"]
            window = audit.query(start=start + timedelta(minutes=30), end=start + timedelta(hours=2))
            assert [e.message for e in window] == ["unlock", "lock"]
        finally:
            audit.close()

    def test_pagination(self, clock) -> None:
        audit = _log(clock, "paging")
        try:
            self._seed(audit, clock)
            assert [e.message for e in audit.query(limit=2)] == ["ok", "unlock"]
            assert [e.message for e in audit.query(limit=2, offset=2)] == ["lock", "f1"]
        finally:
            audit.close()

    def test_summary(self, clock) -> None:
        audit = _log(clock, "summary")
        try:
            self._seed(audit, clock)
            summary = audit.summary()
            assert summary["by_severity"] == {"LOW": 1, "HIGH": 1, "INFO": 2}
            assert summary["by_event_type"]["ACCOUNT_LOCKED"] == 1
            assert sum(summary["by_event_type"].values()) == 4
        finally:
            audit.close()
