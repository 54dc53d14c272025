"""
monitor/rules.py -- Default security rules and the window condition.

Rules are data. Adding one is a new SecurityRule entry, not new engine code:

    SecurityRule(
        name="credential_stuffing",
        event_type="credential_stuffing",
        threshold=50,
        window_seconds=10 * 60,
        severity="critical",
        actions=("block_ip", "alert_admin"),
        cooldown_seconds=60 * 60,
    )

Layer rule: no imports from api/, crossdomain/, or sessions/.
"""

from __future__ import annotations

from collections.abc import Iterable

from monitor.models import SecurityEvent, SecurityRule

_MINUTE = 60
_HOUR = 60 * _MINUTE

DEFAULT_RULES: tuple[SecurityRule, ...] = (
    SecurityRule(
        name="multiple_failed_logins",
        event_type="multiple_failed_logins",
        threshold=5,
        window_seconds=15 * _MINUTE,
        severity="high",
        actions=("temporary_lockout", "alert_admin", "terminate_sessions"),
        cooldown_seconds=30 * _MINUTE,
    ),
    SecurityRule(
        name="brute_force_attempt",
        event_type="brute_force_attempt",
        threshold=10,
        window_seconds=5 * _MINUTE,
        severity="critical",
        actions=("permanent_lockout", "block_ip", "alert_admin", "terminate_sessions"),
        cooldown_seconds=_HOUR,
    ),
    SecurityRule(
        name="device_fingerprint_mismatch",
        event_type="device_fingerprint_mismatch",
        threshold=3,
        window_seconds=10 * _MINUTE,
        severity="high",
        actions=("require_mfa", "notify_user", "alert_admin"),
        cooldown_seconds=_HOUR,
    ),
    SecurityRule(
        name="suspicious_location",
        event_type="suspicious_location",
        threshold=3,
        window_seconds=_HOUR,
        severity="medium",
        actions=("require_mfa", "notify_user"),
        cooldown_seconds=2 * _HOUR,
        distinct_field="location",
    ),
    SecurityRule(
        name="rapid_password_changes",
        event_type="rapid_password_changes",
        threshold=5,
        window_seconds=_HOUR,
        severity="medium",
        actions=("temporary_lockout", "notify_user", "alert_admin"),
        cooldown_seconds=4 * _HOUR,
    ),
    SecurityRule(
        name="token_abuse",
        event_type="token_abuse",
        threshold=20,
        window_seconds=30 * _MINUTE,
        severity="high",
        actions=("terminate_sessions", "temporary_lockout", "alert_admin"),
        cooldown_seconds=2 * _HOUR,
    ),
)


def window_count(rule: SecurityRule, events: Iterable[SecurityEvent], now: float) -> int:
    """Count same-typed events (or distinct field values) inside the rule's window."""
    in_window = [e for e in events if e.event_type == rule.event_type and now - e.timestamp < rule.window_seconds]
    if rule.distinct_field is None:
        return len(in_window)
    return len({e.metadata.get(rule.distinct_field) for e in in_window if e.metadata.get(rule.distinct_field)})


def condition_met(rule: SecurityRule, events: Iterable[SecurityEvent], now: float) -> bool:
    return window_count(rule, events, now) >= rule.threshold


def in_cooldown(rule: SecurityRule, events: Iterable[SecurityEvent], now: float) -> bool:
    """True if any of this user's recent events already carries one of the rule's actions."""
    actions = set(rule.actions)
    return any(
        now - e.timestamp < rule.cooldown_seconds and actions.intersection(e.response_actions) for e in events
    )
