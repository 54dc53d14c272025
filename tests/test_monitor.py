"""Unit tests for monitor/ -- rule engine, actions, outbox and analysis.

Covers:
- 5 failed logins in 15 minutes lock the account, queue an admin alert and
  terminate the user's sessions; a 6th inside the cooldown fires nothing
- events outside the window do not count
- suspicious_location counts distinct locations, not events
- brute force: permanent lock + IP block
- a failing action is audited and does not stop the remaining actions
- terminate_sessions also revokes the user's transfer tokens
- caller metadata never overwrites a security_event record's own keys
- ActionOutbox delivers, runs alert callbacks once, retries and drops after 3
- analyze_user_security() risk levels over the last 7 days
- prune() drops events past retention
"""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest
import requests

from auth.models import ProviderSession, ProviderUser
from crossdomain.store import TransferTokenStore
from monitor.engine import SecurityMonitor
from monitor.models import OutboxMessage, SecurityEvent, SecurityRule
from monitor.outbox import ActionOutbox, Notifier
from monitor.rules import DEFAULT_RULES, condition_met, in_cooldown, window_count

IP = "203.0.113.7"


def _fail_logins(monitor, clock, n, user_id="user-1", step=10):
    ids = []
    for _ in range(n):
        ids.append(monitor.report_failed_login(user_id, ip_address=IP))
        clock.advance(step)
    return ids


class TestFailedLoginRule:
    def test_fifth_failure_locks_alerts_and_terminates(self, monitor, sessions, security_store, outbox, audit, clock):
        sessions.create_session("user-1", "fp")
        sessions.create_session("user-1", "fp")

        _fail_logins(monitor, clock, 4)
        assert not security_store.lock_status("user-1")[0]
        assert outbox.pending() == 0

        _fail_logins(monitor, clock, 1)

        locked, retry_after = security_store.lock_status("user-1")
        assert locked
        assert 1700 < retry_after <= 1800
        assert outbox.pending() == 1
        assert len(sessions.get_user_sessions("user-1")) == 0
        assert audit.get_events(type="admin_alert")[0].metadata["rule"] == "multiple_failed_logins"
        assert audit.get_events(type="account_locked")[0].metadata["permanent"] is False

        newest = monitor.get_events("user-1")[0]
        assert newest.response_actions == ["temporary_lockout", "alert_admin", "terminate_sessions"]

    def test_sixth_failure_inside_cooldown_fires_nothing(self, monitor, outbox, audit, clock):
        _fail_logins(monitor, clock, 6)
        assert outbox.pending() == 1
        assert len(audit.get_events(type="account_locked")) == 1
        assert monitor.get_events("user-1")[0].response_actions == []

    def test_failures_outside_window_do_not_count(self, monitor, security_store, clock):
        _fail_logins(monitor, clock, 5, step=4 * 60)
        assert not security_store.lock_status("user-1")[0]

    def test_users_are_independent(self, monitor, security_store, clock):
        _fail_logins(monitor, clock, 3, "user-1")
        _fail_logins(monitor, clock, 3, "user-2")
        assert not security_store.lock_status("user-1")[0]
        assert not security_store.lock_status("user-2")[0]


class TestOtherRules:
    def test_suspicious_location_counts_distinct_values(self, monitor, security_store, outbox, clock):
        for location in ("Berlin", "Berlin", "Berlin", "Lagos"):
            monitor.report_suspicious_location("user-1", location)
            clock.advance(60)
        assert not security_store.get_account("user-1").mfa_required

        monitor.report_suspicious_location("user-1", "Lima")
        account = security_store.get_account("user-1")
        assert account.mfa_required
        assert account.mfa_required_reason == "suspicious_location"
        assert outbox.pending() == 1

    def test_brute_force_locks_permanently_and_blocks_ip(self, monitor, security_store, audit, clock):
        for attempt in range(10):
            monitor.report_brute_force_attempt("user-1", attempt, ip_address=IP)
            clock.advance(5)

        assert security_store.lock_status("user-1") == (True, None)
        assert security_store.is_ip_blocked(IP)
        assert audit.get_events(type="ip_blocked")[0].metadata["ip_address"] == IP

    def test_security_event_audited(self, monitor, audit):
        event_id = monitor.record_event("user-1", "csrf_validation_failed", "medium", {"route": "x"})
        record = audit.get_events(type="security_event")[0]
        assert record.metadata["event_id"] == event_id
        assert record.metadata["event_type"] == "csrf_validation_failed"
        assert record.metadata["route"] == "x"

    def test_caller_metadata_cannot_overwrite_record_keys(self, monitor, audit):
        event_id = monitor.record_event(
            "user-1",
            "csrf_validation_failed",
            "medium",
            {"event_type": "spoofed", "severity": "low", "event_id": "evt_forged", "route": "x"},
        )
        record = audit.get_events(type="security_event")[0]
        assert record.metadata["event_type"] == "csrf_validation_failed"
        assert record.metadata["severity"] == "medium"
        assert record.metadata["event_id"] == event_id
        assert record.metadata["route"] == "x"

    def test_terminate_sessions_also_revokes_transfer_tokens(self, audit, security_store, outbox, sessions, clock):
        tokens = TransferTokenStore(audit, source_domain="auth.example.com", clock=clock)
        monitor = SecurityMonitor(audit, security_store, outbox, sessions=sessions, transfer_tokens=tokens, clock=clock)
        session = ProviderSession(
            access_token="access-handle",
            refresh_token="refresh-handle",
            expires_at=clock() + 3600,
            user=ProviderUser(id="user-1", email_verified=True),
        )
        token_id = tokens.issue(session)
        other_user = tokens.issue(replace(session, user=ProviderUser(id="user-2", email_verified=True)))

        _fail_logins(monitor, clock, 5)

        assert tokens.validate(token_id) is None
        assert tokens.validate(other_user) is not None


class TestActionIsolation:
    def test_failed_action_does_not_block_the_rest(self, audit, outbox, sessions, clock):
        broken_store = MagicMock()
        broken_store.lock_account.side_effect = RuntimeError("db down")
        monitor = SecurityMonitor(audit, broken_store, outbox, sessions=sessions, clock=clock)
        sessions.create_session("user-1", "fp")

        _fail_logins(monitor, clock, 5)

        failure = audit.get_events(type="security_action_failed")[0]
        assert failure.metadata["action"] == "temporary_lockout"
        assert failure.metadata["error"] == "RuntimeError"
        assert outbox.pending() == 1
        assert len(sessions.get_user_sessions("user-1")) == 0

    def test_unknown_action_is_audited(self, audit, security_store, outbox, clock):
        rule = SecurityRule(
            name="custom",
            event_type="custom_event",
            threshold=1,
            window_seconds=60,
            severity="low",
            actions=("does_not_exist", "log_event"),
            cooldown_seconds=60,
        )
        monitor = SecurityMonitor(audit, security_store, outbox, rules=(rule,), clock=clock)
        monitor.record_event("user-1", "custom_event")
        failure = audit.get_events(type="security_action_failed")[0]
        assert failure.metadata["action"] == "does_not_exist"

    def test_terminate_sessions_without_manager_is_skipped(self, audit, security_store, outbox, clock):
        monitor = SecurityMonitor(audit, security_store, outbox, clock=clock)
        _fail_logins(monitor, clock, 5)
        assert security_store.lock_status("user-1")[0]
        assert audit.get_events(type="security_action_failed") == []


class TestOutbox:
    def test_drain_delivers_and_runs_alert_callbacks(self, monitor, outbox, notifier, clock):
        seen: list[SecurityEvent] = []
        monitor.add_alert_callback(seen.append)

        _fail_logins(monitor, clock, 5)
        assert seen == []  # callbacks run at delivery time, not at record time

        assert outbox.drain() == 1
        assert len(notifier.delivered) == 1
        assert notifier.delivered[0].kind == "admin_alert"
        assert [e.event_type for e in seen] == ["multiple_failed_logins"]
        assert outbox.stats() == {"pending": 0, "delivered": 1, "dropped": 0}

        assert monitor.remove_alert_callback(seen.append)
        assert not monitor.remove_alert_callback(seen.append)

    def test_failing_delivery_retried_then_dropped(self, outbox, notifier, clock):
        notifier.fail_times = 10
        event = SecurityEvent(id="evt_1", user_id="user-1", event_type="x", severity="high", timestamp=clock())
        outbox.enqueue(OutboxMessage(kind="admin_alert", user_id="user-1", rule_name="r", severity="high", event=event, created_at=clock()))

        assert outbox.drain() == 0
        assert outbox.pending() == 1
        assert outbox.drain() == 0
        assert outbox.drain() == 0
        assert outbox.pending() == 0
        assert outbox.stats() == {"pending": 0, "delivered": 0, "dropped": 1}

    def test_transient_failure_recovers(self, outbox, notifier, clock):
        notifier.fail_times = 1
        event = SecurityEvent(id="evt_1", user_id="user-1", event_type="x", severity="low", timestamp=clock())
        outbox.enqueue(OutboxMessage(kind="user_notification", user_id="user-1", rule_name="r", severity="low", event=event, created_at=clock()))

        assert outbox.drain() == 0
        assert outbox.drain() == 1
        assert notifier.delivered[0].attempts == 1

    def test_webhook_retry_does_not_repeat_alert_callbacks(self, audit, security_store, clock):
        notifier = Notifier(webhook_url="https://hooks.test/alerts")
        notifier._session = MagicMock()
        notifier._session.post.side_effect = [
            requests.ConnectionError("webhook down"),
            requests.ConnectionError("webhook down"),
            MagicMock(),
        ]
        outbox = ActionOutbox(notifier, clock=clock)
        monitor = SecurityMonitor(audit, security_store, outbox, clock=clock)
        seen: list[SecurityEvent] = []
        monitor.add_alert_callback(seen.append)

        _fail_logins(monitor, clock, 5)

        assert outbox.drain() == 0
        assert outbox.drain() == 0
        assert outbox.drain() == 1
        assert notifier._session.post.call_count == 3
        assert [e.event_type for e in seen] == ["multiple_failed_logins"]


class TestRuleHelpers:
    def _event(self, ts, event_type="multiple_failed_logins", actions=None, **metadata):
        return SecurityEvent(
            id=f"evt_{ts}",
            user_id="user-1",
            event_type=event_type,
            severity="medium",
            timestamp=ts,
            metadata=metadata,
            response_actions=list(actions or []),
        )

    def test_window_is_half_open(self):
        rule = DEFAULT_RULES[0]
        events = [self._event(0.0), self._event(100.0)]
        assert window_count(rule, events, now=rule.window_seconds) == 1
        assert window_count(rule, events, now=rule.window_seconds - 1) == 2

    def test_condition_and_cooldown(self):
        rule = DEFAULT_RULES[0]
        events = [self._event(float(i)) for i in range(5)]
        assert condition_met(rule, events, now=5.0)
        assert not in_cooldown(rule, events, now=5.0)

        events[-1].response_actions.append("alert_admin")
        assert in_cooldown(rule, events, now=5.0)
        assert not in_cooldown(rule, events, now=4.0 + rule.cooldown_seconds)


class TestAnalysisAndRetention:
    @pytest.mark.parametrize(
        "severities, expected",
        [
            ([], "low"),
            (["medium", "medium"], "low"),
            (["medium", "medium", "medium"], "medium"),
            (["high"], "medium"),
            (["high", "high"], "high"),
            (["low", "critical"], "critical"),
        ],
    )
    def test_risk_levels(self, monitor, clock, severities, expected):
        for severity in severities:
            monitor.record_event("user-1", "manual_review", severity)
            clock.advance(1)
        analysis = monitor.analyze_user_security("user-1")
        assert analysis.risk_level == expected
        assert analysis.recommendations

    def test_analysis_ignores_events_older_than_a_week(self, monitor, clock):
        monitor.record_event("user-1", "manual_review", "critical")
        clock.advance(8 * 24 * 3600)
        analysis = monitor.analyze_user_security("user-1")
        assert analysis.risk_level == "low"
        assert analysis.events == []
        assert analysis.last_incident is None

    def test_last_incident_is_newest_high_or_critical(self, monitor, clock):
        monitor.record_event("user-1", "manual_review", "high")
        clock.advance(1)
        newest = monitor.record_event("user-1", "manual_review", "critical")
        clock.advance(1)
        monitor.record_event("user-1", "manual_review", "low")
        assert monitor.analyze_user_security("user-1").last_incident.id == newest

    def test_prune_past_retention(self, monitor, clock, audit, security_store):
        monitor.record_event("user-1", "manual_review")
        clock.advance(31 * 24 * 3600)
        monitor.record_event("user-2", "manual_review")

        assert monitor.prune() == 1
        assert monitor.get_events("user-1") == []
        assert len(monitor.get_events("user-2")) == 1
        assert all(r.user_id == "user-2" for r in security_store.recent_audit())

    def test_resolve_and_recent_events(self, monitor, clock):
        event_id = monitor.record_event("user-1", "manual_review", "high")
        clock.advance(1)
        monitor.record_event("user-2", "manual_review", "low")

        assert [e.user_id for e in monitor.recent_events()] == ["user-2", "user-1"]
        assert [e.id for e in monitor.recent_events(severity="high")] == [event_id]
        assert monitor.resolve_event("user-1", event_id)
        assert not monitor.resolve_event("user-1", "evt_missing")
        assert monitor.get_events("user-1")[0].resolved
        assert monitor.stats()["unresolved_high"] == 0
