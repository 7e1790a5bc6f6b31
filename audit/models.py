"""
audit/models.py -- Domain types for the security audit log.

Pattern: Data class (pure data container, zero logic). AuditEvent is frozen:
an event is an immutable fact, created exactly once by the component that
observed it.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET = "PASSWORD_RESET"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    FAILED_ATTEMPTS_RESET = "FAILED_ATTEMPTS_RESET"
    MFA_SETUP_STARTED = "MFA_SETUP_STARTED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFY_FAILURE = "MFA_VERIFY_FAILURE"
    MFA_REQUIREMENT_CHANGED = "MFA_REQUIREMENT_CHANGED"
    MFA_EXEMPTION_REQUESTED = "MFA_EXEMPTION_REQUESTED"
    KEY_ROTATED = "KEY_ROTATED"
    KEY_RETIRED = "KEY_RETIRED"
    TOKEN_REJECTED = "TOKEN_REJECTED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    SECURITY_EVENTS_VIEWED = "SECURITY_EVENTS_VIEWED"
    ACCOUNT_DETAILS_VIEWED = "ACCOUNT_DETAILS_VIEWED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class Severity(str, Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    WARNING = "warning"


# Default severity per event type. Callers override when the same event type
# carries different weight (e.g. admin-forced MFA_DISABLED is HIGH).
DEFAULT_SEVERITY: dict[EventType, Severity] = {
    EventType.LOGIN_SUCCESS: Severity.INFO,
    EventType.LOGIN_FAILURE: Severity.LOW,
    EventType.LOGOUT: Severity.INFO,
    EventType.ACCOUNT_CREATED: Severity.INFO,
    EventType.PASSWORD_CHANGED: Severity.MEDIUM,
    EventType.PASSWORD_RESET: Severity.HIGH,
    EventType.ACCOUNT_LOCKED: Severity.HIGH,
    EventType.ACCOUNT_UNLOCKED: Severity.INFO,
    EventType.FAILED_ATTEMPTS_RESET: Severity.INFO,
    EventType.MFA_SETUP_STARTED: Severity.INFO,
    EventType.MFA_ENABLED: Severity.INFO,
    EventType.MFA_DISABLED: Severity.MEDIUM,
    EventType.MFA_VERIFY_FAILURE: Severity.LOW,
    EventType.MFA_REQUIREMENT_CHANGED: Severity.MEDIUM,
    EventType.MFA_EXEMPTION_REQUESTED: Severity.LOW,
    EventType.KEY_ROTATED: Severity.MEDIUM,
    EventType.KEY_RETIRED: Severity.INFO,
    EventType.TOKEN_REJECTED: Severity.LOW,
    EventType.TOKEN_REFRESHED: Severity.INFO,
    EventType.SECURITY_EVENTS_VIEWED: Severity.INFO,
    EventType.ACCOUNT_DETAILS_VIEWED: Severity.INFO,
    EventType.SYSTEM_ERROR: Severity.CRITICAL,
}


@dataclass(frozen=True)
class AuditEvent:
    """An immutable record of a security-relevant action.

    user_id is the actor (None for anonymous or system actions such as an
    unknown-email login or an automatic lock expiry). target_user_id is set
    for admin-on-user actions and for events where the actor differs from
    the affected account.

    details holds structured context (attempt counts, key ids, reason codes).
    It must never contain secret material.
    """

    event_type: EventType
    severity: Severity
    outcome: Outcome
    message: str
    timestamp: datetime
    id: int | None = None
    user_id: int | None = None
    target_user_id: int | None = None
    ip_address: str | None = None
    details: dict = field(default_factory=dict)
