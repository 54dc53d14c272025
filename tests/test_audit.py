"""Unit tests for auth/audit.py -- the shared audit sink.

Covers:
- emit() stamps domain and clock time, keeps the record in the ring and
  persists it through the SecurityStore
- a persistence failure never propagates out of emit()
- get_events() filters and returns newest first
- metrics() counters and health_status() thresholds
"""

from unittest.mock import MagicMock

from auth.audit import AuditLog


def test_emit_records_and_persists(audit, security_store, clock):
    record = audit.emit("token_generation", user_id="user-1", metadata={"token_id": "abcd1234"})
    assert record.domain == "auth.example.com"
    assert record.timestamp == clock()
    assert record.success

    persisted = security_store.recent_audit()
    assert len(persisted) == 1
    assert persisted[0].type == "token_generation"
    assert persisted[0].metadata == {"token_id": "abcd1234"}


def test_emit_survives_store_failure(clock):
    broken = MagicMock()
    broken.append_audit.side_effect = RuntimeError("disk full")
    log = AuditLog(domain="auth.example.com", store=broken, clock=clock)

    record = log.emit("sign_in", user_id="user-1")

    assert record.type == "sign_in"
    assert log.get_events() == [record]


def test_get_events_filters_newest_first(audit, clock):
    audit.emit("sign_in", user_id="user-1")
    clock.advance(1)
    audit.emit("sign_in", user_id="user-2", success=False)
    clock.advance(1)
    audit.emit("session_created", user_id="user-1", domain="app.example.com")

    assert [r.type for r in audit.get_events()] == ["session_created", "sign_in", "sign_in"]
    assert [r.user_id for r in audit.get_events(type="sign_in")] == ["user-2", "user-1"]
    assert len(audit.get_events(user_id="user-1")) == 2
    assert len(audit.get_events(domain="app.example.com")) == 1
    assert [r.user_id for r in audit.get_events(success=False)] == ["user-2"]
    assert len(audit.get_events(limit=1)) == 1


def test_metrics_counts(audit):
    audit.emit("token_generation", user_id="user-1")
    audit.emit("token_validation", user_id="user-1")
    audit.emit("token_validation", user_id="user-1", success=False)
    audit.emit("session_created", user_id="user-2")

    metrics = audit.metrics()
    assert metrics["total_events"] == 4
    assert metrics["token_generations"] == 1
    assert metrics["token_validations"] == 2
    assert metrics["sessions_created"] == 1
    assert metrics["errors"] == 1
    assert metrics["error_rate"] == 0.25
    assert metrics["active_users_24h"] == 2
    assert metrics["by_domain"] == {"auth.example.com": 4}


def test_health_status_thresholds(audit, clock):
    assert audit.health_status()["status"] == "healthy"

    for _ in range(19):
        audit.emit("sign_in")
    audit.emit("sign_in", success=False)
    health = audit.health_status()
    assert health["status"] == "degraded"
    assert health["error_rate_1h"] == 0.05
    assert health["persistent_store"] is True

    for _ in range(5):
        audit.emit("sign_in", success=False)
    assert audit.health_status()["status"] == "unhealthy"

    # Only the last hour counts.
    clock.advance(3601)
    assert audit.health_status() == {
        "status": "healthy",
        "error_rate_1h": 0.0,
        "events_1h": 0,
        "persistent_store": True,
    }
