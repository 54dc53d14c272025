"""
monitor/engine.py -- Security event log and rule engine.

record_event() appends to the user's event list, writes a security_event
audit record, then evaluates every rule whose event_type matches:

  1. cooldown -- skip when any of the user's events younger than
     cooldown_seconds already carries one of the rule's actions
  2. window   -- count same-typed events (or distinct metadata values) in the
     rule's look-back window; fire when the count reaches the threshold
  3. actions  -- run in order, each in its own try/except. A failed action is
     logged and audited and never blocks the rest.

The fired actions are recorded on the triggering event while the monitor lock
is held, before any action runs. That makes the cooldown check exact under
concurrent record_event() calls for the same user. The actions themselves run
after the lock is released because terminate_sessions calls into the
SessionManager, which may in turn report an event back here.

Action placement:
  inline   temporary_lockout, permanent_lockout, require_mfa, block_ip,
           terminate_sessions, rate_limit, log_event
  outbox   notify_user, alert_admin (audited at enqueue time, delivered by
           the lifespan drain task)

Layer rule: no imports from api/ or crossdomain/. The session manager is
injected; this module never imports sessions/.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Protocol

from auth.audit import AuditLog
from auth.store import SecurityStore
from auth.tokens import generate_event_id
from monitor.models import OutboxMessage, SecurityAnalysis, SecurityEvent, SecurityRule
from monitor.outbox import ActionOutbox, AlertCallback
from monitor.rules import DEFAULT_RULES, condition_met, in_cooldown

logger = logging.getLogger("crossauth.monitor")

_DAY = 24 * 60 * 60
_ANALYSIS_WINDOW = 7 * _DAY
_RATE_LIMIT_SECONDS = 15 * 60

_RECOMMENDATIONS = {
    "critical": ["Immediate security review required", "Consider permanent account restrictions"],
    "high": ["Require multi-factor authentication", "Monitor account activity closely"],
    "medium": ["Enable additional security notifications", "Review recent login activity"],
    "low": ["Maintain current security practices"],
}


class SessionTerminator(Protocol):
    def terminate_all_user_sessions(
        self, user_id: str, except_session_id: str | None = None, reason: str = "user_requested"
    ) -> int: ...


class TokenRevoker(Protocol):
    def revoke_all_for_user(self, user_id: str) -> int: ...


class SecurityMonitor:
    """Append-only per-user event log evaluated against declarative rules.

    Usage:
        monitor = SecurityMonitor(audit, security_store, outbox, sessions=session_manager)
        monitor.report_failed_login("user-1", ip_address="203.0.113.7")
        analysis = monitor.analyze_user_security("user-1")
    """

    def __init__(
        self,
        audit: AuditLog,
        security_store: SecurityStore,
        outbox: ActionOutbox,
        sessions: SessionTerminator | None = None,
        transfer_tokens: TokenRevoker | None = None,
        rules: tuple[SecurityRule, ...] = DEFAULT_RULES,
        retention_days: int = 30,
        clock=time.time,
    ) -> None:
        self.rules = rules
        self.retention_seconds = retention_days * _DAY
        self._audit = audit
        self._store = security_store
        self._outbox = outbox
        self._sessions = sessions
        self._transfer_tokens = transfer_tokens
        self._clock = clock
        self._lock = threading.RLock()
        self._events: dict[str, list[SecurityEvent]] = {}
        self._handlers = {
            "log_event": self._log_event,
            "rate_limit": self._rate_limit,
            "temporary_lockout": self._temporary_lockout,
            "permanent_lockout": self._permanent_lockout,
            "require_mfa": self._require_mfa,
            "notify_user": self._notify_user,
            "alert_admin": self._alert_admin,
            "terminate_sessions": self._terminate_sessions,
            "block_ip": self._block_ip,
        }

    def attach_sessions(self, sessions: SessionTerminator | None) -> None:
        self._sessions = sessions

    # ------------------------------------------------------------------
    # Recording and evaluation
    # ------------------------------------------------------------------

    def record_event(
        self,
        user_id: str,
        event_type: str,
        severity: str = "low",
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        now = self._clock()
        event = SecurityEvent(
            id=generate_event_id(),
            user_id=user_id,
            event_type=event_type,
            severity=severity,
            timestamp=now,
            metadata=dict(metadata or {}),
            ip_address=ip_address,
            user_agent=user_agent,
        )

        fired: list[SecurityRule] = []
        with self._lock:
            events = self._events.setdefault(user_id, [])
            events.append(event)
            for rule in self.rules:
                if rule.event_type != event_type:
                    continue
                if in_cooldown(rule, events, now):
                    logger.debug("Rule %s in cooldown for user %s", rule.name, user_id)
                    continue
                if condition_met(rule, events, now):
                    fired.append(rule)
                    event.response_actions.extend(a for a in rule.actions if a not in event.response_actions)

        # Caller metadata first: it must not overwrite the record's own keys.
        self._audit.emit(
            "security_event",
            user_id=user_id,
            metadata={**event.metadata, "event_type": event_type, "severity": severity, "event_id": event.id},
        )

        for rule in fired:
            logger.warning("Security rule %s fired for user %s (event %s)", rule.name, user_id, event.id)
            self._execute(rule, event)
        return event.id

    def _execute(self, rule: SecurityRule, event: SecurityEvent) -> None:
        for action in rule.actions:
            handler = self._handlers.get(action)
            try:
                if handler is None:
                    raise ValueError(f"unknown security action {action!r}")
                handler(rule, event)
            except Exception as e:
                logger.exception("Security action %s failed for user %s", action, event.user_id)
                self._audit.emit(
                    "security_action_failed",
                    user_id=event.user_id,
                    metadata={"action": action, "rule": rule.name, "event_id": event.id, "error": type(e).__name__},
                    success=False,
                )

    # ------------------------------------------------------------------
    # Action handlers
    # ------------------------------------------------------------------

    def _log_event(self, rule: SecurityRule, event: SecurityEvent) -> None:
        logger.warning(
            "SECURITY EVENT [%s] user=%s type=%s event=%s ip=%s actions=%s",
            rule.severity.upper(),
            event.user_id,
            rule.event_type,
            event.id,
            event.ip_address,
            ", ".join(rule.actions),
        )

    def _rate_limit(self, rule: SecurityRule, event: SecurityEvent) -> None:
        self._audit.emit(
            "rate_limit_applied",
            user_id=event.user_id,
            metadata={"ip_address": event.ip_address, "duration_seconds": _RATE_LIMIT_SECONDS, "event_id": event.id},
        )

    def _temporary_lockout(self, rule: SecurityRule, event: SecurityEvent) -> None:
        until = self._clock() + rule.cooldown_seconds
        self._store.lock_account(event.user_id, f"Temporary lockout due to {event.event_type}", until=until)
        self._audit.emit(
            "account_locked",
            user_id=event.user_id,
            metadata={"permanent": False, "locked_until": until, "event_id": event.id, "rule": rule.name},
        )

    def _permanent_lockout(self, rule: SecurityRule, event: SecurityEvent) -> None:
        self._store.lock_account(event.user_id, "Permanent lockout due to severe security violations")
        self._audit.emit(
            "account_locked",
            user_id=event.user_id,
            metadata={"permanent": True, "event_id": event.id, "rule": rule.name},
        )

    def _require_mfa(self, rule: SecurityRule, event: SecurityEvent) -> None:
        self._store.require_mfa(event.user_id, event.event_type)
        self._audit.emit("mfa_required", user_id=event.user_id, metadata={"reason": event.event_type, "event_id": event.id})

    def _notify_user(self, rule: SecurityRule, event: SecurityEvent) -> None:
        self._enqueue("user_notification", rule, event)

    def _alert_admin(self, rule: SecurityRule, event: SecurityEvent) -> None:
        self._enqueue("admin_alert", rule, event)

    def _enqueue(self, kind: str, rule: SecurityRule, event: SecurityEvent) -> None:
        self._outbox.enqueue(
            OutboxMessage(
                kind=kind,
                user_id=event.user_id,
                rule_name=rule.name,
                severity=rule.severity,
                event=event,
                created_at=self._clock(),
            )
        )
        self._audit.emit(
            kind,
            user_id=event.user_id,
            metadata={"rule": rule.name, "severity": rule.severity, "event_id": event.id, "ip_address": event.ip_address},
        )

    def _terminate_sessions(self, rule: SecurityRule, event: SecurityEvent) -> None:
        # Outstanding transfer tokens would mint a fresh session at the other
        # origin, so they go too.
        if self._transfer_tokens is not None:
            revoked = self._transfer_tokens.revoke_all_for_user(event.user_id)
            if revoked:
                logger.info("Revoked %d transfer token(s) for user %s after %s", revoked, event.user_id, rule.name)
        if self._sessions is None:
            logger.warning("terminate_sessions skipped for user %s: no session manager attached", event.user_id)
            return
        count = self._sessions.terminate_all_user_sessions(event.user_id, reason=f"security_event:{event.event_type}")
        logger.info("Terminated %d session(s) for user %s after %s", count, event.user_id, rule.name)

    def _block_ip(self, rule: SecurityRule, event: SecurityEvent) -> None:
        if not event.ip_address:
            return
        self._store.block_ip(event.ip_address, event.event_type)
        self._audit.emit(
            "ip_blocked",
            user_id=event.user_id,
            metadata={"ip_address": event.ip_address, "reason": event.event_type, "event_id": event.id},
        )

    # ------------------------------------------------------------------
    # Convenience reporters
    # ------------------------------------------------------------------

    def report_failed_login(self, user_id, ip_address=None, user_agent=None, metadata=None) -> str:
        return self.record_event(user_id, "multiple_failed_logins", "medium", metadata, ip_address, user_agent)

    def report_suspicious_location(self, user_id, location, ip_address=None, user_agent=None) -> str:
        return self.record_event(user_id, "suspicious_location", "medium", {"location": location}, ip_address, user_agent)

    def report_device_fingerprint_mismatch(
        self, user_id, expected_fingerprint, actual_fingerprint, ip_address=None, user_agent=None
    ) -> str:
        return self.record_event(
            user_id,
            "device_fingerprint_mismatch",
            "high",
            {"expected_fingerprint": expected_fingerprint, "actual_fingerprint": actual_fingerprint},
            ip_address,
            user_agent,
        )

    def report_brute_force_attempt(self, user_id, attempt_count, ip_address=None, user_agent=None) -> str:
        return self.record_event(
            user_id, "brute_force_attempt", "critical", {"attempt_count": attempt_count}, ip_address, user_agent
        )

    # ------------------------------------------------------------------
    # Alert callbacks (delivered from the outbox)
    # ------------------------------------------------------------------

    def add_alert_callback(self, callback: AlertCallback) -> None:
        self._outbox.notifier.add_callback(callback)

    def remove_alert_callback(self, callback: AlertCallback) -> bool:
        return self._outbox.notifier.remove_callback(callback)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_events(self, user_id: str, limit: int = 50) -> list[SecurityEvent]:
        """A user's events, newest first. Returns copies."""
        with self._lock:
            events = list(self._events.get(user_id, ()))
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return [replace(e, response_actions=list(e.response_actions)) for e in events[:limit]]

    def recent_events(self, limit: int = 100, severity: str | None = None) -> list[SecurityEvent]:
        """Events across all users, newest first, for the operator endpoint."""
        with self._lock:
            events = [e for user_events in self._events.values() for e in user_events]
        if severity is not None:
            events = [e for e in events if e.severity == severity]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return [replace(e, response_actions=list(e.response_actions)) for e in events[:limit]]

    def resolve_event(self, user_id: str, event_id: str) -> bool:
        with self._lock:
            for event in self._events.get(user_id, ()):
                if event.id == event_id:
                    event.resolved = True
                    break
            else:
                return False
        self._audit.emit("security_event_resolved", user_id=user_id, metadata={"event_id": event_id})
        return True

    def analyze_user_security(self, user_id: str) -> SecurityAnalysis:
        """Read-only risk summary over the last 7 days. For operators only."""
        now = self._clock()
        recent = [e for e in self.get_events(user_id, limit=1000) if now - e.timestamp < _ANALYSIS_WINDOW]

        critical = sum(1 for e in recent if e.severity == "critical")
        high = sum(1 for e in recent if e.severity == "high")
        medium = sum(1 for e in recent if e.severity == "medium")

        if critical > 0:
            risk = "critical"
        elif high >= 2:
            risk = "high"
        elif medium >= 3 or high >= 1:
            risk = "medium"
        else:
            risk = "low"

        last_incident = next((e for e in recent if e.severity in ("high", "critical")), None)
        return SecurityAnalysis(
            user_id=user_id,
            risk_level=risk,
            recommendations=list(_RECOMMENDATIONS[risk]),
            events=recent,
            last_incident=last_incident,
        )

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            events = [e for user_events in self._events.values() for e in user_events]
            users = len(self._events)
        by_severity = {s: 0 for s in ("low", "medium", "high", "critical")}
        for e in events:
            by_severity[e.severity] = by_severity.get(e.severity, 0) + 1
        return {
            "total_events": len(events),
            "users_with_events": users,
            "events_24h": sum(1 for e in events if now - e.timestamp <= _DAY),
            "unresolved_high": sum(1 for e in events if not e.resolved and e.severity in ("high", "critical")),
            "by_severity": by_severity,
            "outbox": self._outbox.stats(),
        }

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune(self) -> int:
        """Drop events older than the retention window. Returns events removed.

        Persisted audit rows share the same retention and are pruned here too.
        """
        cutoff = self._clock() - self.retention_seconds
        removed = 0
        with self._lock:
            for user_id in list(self._events):
                events = self._events[user_id]
                kept = [e for e in events if e.timestamp >= cutoff]
                removed += len(events) - len(kept)
                if kept:
                    self._events[user_id] = kept
                else:
                    del self._events[user_id]
        if removed:
            logger.info("Pruned %d security event(s) past retention", removed)
        audit_rows = self._store.prune_audit(cutoff)
        if audit_rows:
            logger.info("Pruned %d audit row(s) past retention", audit_rows)
        return removed
