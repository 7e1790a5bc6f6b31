"""
audit/store.py -- SQLAlchemy Core persistence for the security audit log.

Pattern: Repository + Data Mapper (same shape as auth/store.py).
AuditLog is the repository; _row_to_event is the mapper.

Append-only: the repository exposes record() and read queries. There is no
update or delete method, and application code has no other path to the
audit_events table.

Every recorded event is mirrored as one structured log line on the
"qualibrite.audit" logger so operators tailing logs see the same facts the
admin console shows. Log level follows severity.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

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
    func,
    select,
)
from sqlalchemy.engine import Engine

from audit.models import DEFAULT_SEVERITY, AuditEvent, EventType, Outcome, Severity
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("qualibrite.audit")

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_events = Table(
    "audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(40), nullable=False),
    Column("severity", String(10), nullable=False),
    Column("outcome", String(10), nullable=False),
    Column("user_id", Integer),  # actor; NULL for anonymous/system
    Column("target_user_id", Integer),
    Column("message", Text, nullable=False),
    Column("ip_address", String(64)),
    Column("details", Text),  # JSON object
    Column("timestamp", String(40), nullable=False),
    Index("idx_audit_events_event_type", "event_type"),
    Index("idx_audit_events_user_id", "user_id"),
    Index("idx_audit_events_timestamp", "timestamp"),
    Index("idx_audit_events_severity", "severity"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so audit writes do not block readers."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLog:
    """Append-only sink for security events.

    Usage:
        audit = AuditLog("sqlite:///audit.db")
        audit.record(EventType.LOGIN_FAILURE, "Invalid credentials", outcome=Outcome.FAILURE, user_id=7)
        events = audit.query(event_type=EventType.LOGIN_FAILURE)
        audit.close()
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._clock = clock

    def record(
        self,
        event_type: EventType,
        message: str,
        *,
        outcome: Outcome,
        severity: Severity | None = None,
        user_id: int | None = None,
        target_user_id: int | None = None,
        ip_address: str | None = None,
        details: dict | None = None,
    ) -> AuditEvent:
        """Persist one event and return it with its assigned id.

        Failures propagate. A security action whose audit record cannot be
        written is treated as an infrastructure failure for the request.
        """
        severity = severity or DEFAULT_SEVERITY[event_type]
        timestamp = self._clock()
        details = dict(details or {})
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_events.insert().values(
                    event_type=event_type.value,
                    severity=severity.value,
                    outcome=outcome.value,
                    user_id=user_id,
                    target_user_id=target_user_id,
                    message=message,
                    ip_address=ip_address,
                    details=json.dumps(details, default=str, sort_keys=True),
                    timestamp=to_iso(timestamp),
                )
            )
            conn.commit()
            event_id = result.inserted_primary_key[0]

        recorded = AuditEvent(
            id=event_id,
            event_type=event_type,
            severity=severity,
            outcome=outcome,
            message=message,
            timestamp=timestamp,
            user_id=user_id,
            target_user_id=target_user_id,
            ip_address=ip_address,
            details=details,
        )
        logger.log(
            _LOG_LEVELS[severity],
            json.dumps(
                {
                    "event_id": event_id,
                    "event_type": event_type.value,
                    "severity": severity.value,
                    "outcome": outcome.value,
                    "user_id": user_id,
                    "target_user_id": target_user_id,
                    "ip_address": ip_address,
                    "message": message,
                },
                sort_keys=True,
            ),
        )
        return recorded

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(
        self,
        *,
        severity: Severity | None = None,
        event_type: EventType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        user_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEvent]:
        """Return events matching every given filter, newest first.

        user_id matches either the actor or the target, so an admin filtering
        by a patient's id sees both the patient's own logins and the admin
        actions taken against the account. start and end are inclusive
        bounds.
        """
        stmt = _audit_events.select()
        if severity is not None:
            stmt = stmt.where(_audit_events.c.severity == severity.value)
        if event_type is not None:
            stmt = stmt.where(_audit_events.c.event_type == event_type.value)
        if start is not None:
            stmt = stmt.where(_audit_events.c.timestamp >= to_iso(start))
        if end is not None:
            stmt = stmt.where(_audit_events.c.timestamp <= to_iso(end))
        if user_id is not None:
            stmt = stmt.where(
                (_audit_events.c.user_id == user_id) | (_audit_events.c.target_user_id == user_id)
            )
        stmt = stmt.order_by(_audit_events.c.timestamp.desc(), _audit_events.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(r) for r in rows]

    def summary(self) -> dict[str, dict[str, int]]:
        """Return event counts grouped by severity and by event type."""
        with self.engine.connect() as conn:
            by_severity = conn.execute(
                select(_audit_events.c.severity, func.count()).group_by(_audit_events.c.severity)
            ).fetchall()
            by_type = conn.execute(
                select(_audit_events.c.event_type, func.count()).group_by(_audit_events.c.event_type)
            ).fetchall()
        return {
            "by_severity": {row[0]: row[1] for row in by_severity},
            "by_event_type": {row[0]: row[1] for row in by_type},
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event_type=EventType(row.event_type),
        severity=Severity(row.severity),
        outcome=Outcome(row.outcome),
        message=row.message,
        timestamp=from_iso(row.timestamp),
        user_id=row.user_id,
        target_user_id=row.target_user_id,
        ip_address=row.ip_address,
        details=json.loads(row.details) if row.details else {},
    )
