"""
monitor/models.py -- Security event, rule and outbox dataclasses.

Layer rule: no imports from api/, crossdomain/, or sessions/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SEVERITIES = ("low", "medium", "high", "critical")

ACTIONS = (
    "log_event",
    "rate_limit",
    "temporary_lockout",
    "permanent_lockout",
    "require_mfa",
    "notify_user",
    "alert_admin",
    "terminate_sessions",
    "block_ip",
)


@dataclass
class SecurityEvent:
    """One entry in a user's append-only event log.

    response_actions is set once, by the engine, when a rule fires on this
    event. resolved is the only field an operator may flip afterwards.
    """

    id: str
    user_id: str
    event_type: str
    severity: str
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    response_actions: list[str] = field(default_factory=list)
    resolved: bool = False


@dataclass(frozen=True)
class SecurityRule:
    """Declarative rule: N events of event_type inside window_seconds.

    distinct_field switches the count from "events" to "distinct values of
    metadata[distinct_field]" (the location rule counts places, not logins).
    """

    name: str
    event_type: str
    threshold: int
    window_seconds: int
    severity: str
    actions: tuple[str, ...]
    cooldown_seconds: int
    distinct_field: str | None = None


@dataclass
class SecurityAnalysis:
    user_id: str
    risk_level: str
    recommendations: list[str]
    events: list[SecurityEvent]
    last_incident: SecurityEvent | None = None


@dataclass
class OutboxMessage:
    """A notify_user / alert_admin action waiting for delivery.

    kind is "admin_alert" or "user_notification". attempts counts failed
    deliveries; the outbox gives up after its max_attempts.
    """

    kind: str
    user_id: str
    rule_name: str
    severity: str
    event: SecurityEvent
    created_at: float
    attempts: int = 0
