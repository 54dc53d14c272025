"""
auth/audit.py -- Audit sink shared by every store and the rule engine.

Every token, session and monitor operation calls AuditLog.emit() with a record
type and optional user / metadata. The sink:

  1. logs the record on the "crossauth.audit" logger (one line, key=value)
  2. appends it to a bounded in-memory ring (10k) used by the monitoring
     endpoint for events, metrics and health
  3. persists it through SecurityStore.append_audit() when a store is attached

A persistence failure is logged and never propagated: losing an audit row must
not fail the sign-in that produced it. The ring still holds the record.

Thread safety: one lock guards the ring. emit() is called from request
threads and from the lifespan sweep tasks alike.

Layer rule: no imports from api/, crossdomain/, sessions/, or monitor/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque

from auth.models import AuditRecord
from auth.store import SecurityStore

logger = logging.getLogger("crossauth.audit")

_RING_SIZE = 10_000
_DAY_SECONDS = 24 * 60 * 60

# Error rate thresholds for health_status(), over the last hour of records.
_DEGRADED_ERROR_RATE = 0.05
_UNHEALTHY_ERROR_RATE = 0.20


class AuditLog:
    """Structured audit record sink.

    Usage:
        audit = AuditLog(domain="auth.example.com", store=security_store)
        audit.emit("token_generation", user_id="user-1", metadata={"token_id": "ab12..."})
    """

    def __init__(
        self,
        domain: str,
        store: SecurityStore | None = None,
        clock=time.time,
        ring_size: int = _RING_SIZE,
    ) -> None:
        self.domain = domain
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._ring: deque[AuditRecord] = deque(maxlen=ring_size)

    def emit(
        self,
        type: str,
        user_id: str | None = None,
        metadata: dict | None = None,
        success: bool = True,
        domain: str | None = None,
    ) -> AuditRecord:
        record = AuditRecord(
            type=type,
            domain=domain or self.domain,
            timestamp=self._clock(),
            success=success,
            user_id=user_id,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._ring.append(record)

        log = logger.info if success else logger.warning
        log(
            "audit type=%s user=%s domain=%s success=%s metadata=%s",
            record.type,
            record.user_id,
            record.domain,
            record.success,
            record.metadata,
        )

        if self._store is not None:
            try:
                self._store.append_audit(record)
            except Exception:
                logger.exception("Failed to persist audit record type=%s", record.type)
        return record

    # ------------------------------------------------------------------
    # Read side (monitoring endpoint)
    # ------------------------------------------------------------------

    def get_events(
        self,
        type: str | None = None,
        user_id: str | None = None,
        domain: str | None = None,
        success: bool | None = None,
        limit: int = 100,
    ) -> list[AuditRecord]:
        """Return matching records from the ring, newest first."""
        with self._lock:
            snapshot = list(self._ring)
        matches = []
        for record in reversed(snapshot):
            if type is not None and record.type != type:
                continue
            if user_id is not None and record.user_id != user_id:
                continue
            if domain is not None and record.domain != domain:
                continue
            if success is not None and record.success != success:
                continue
            matches.append(record)
            if len(matches) >= limit:
                break
        return matches

    def metrics(self) -> dict:
        """Aggregate counters over the ring.

        Token and sign-in counts cover the whole ring; active_users counts
        distinct users seen in the last 24 hours.
        """
        now = self._clock()
        with self._lock:
            snapshot = list(self._ring)

        by_type = Counter(r.type for r in snapshot)
        by_domain = Counter(r.domain for r in snapshot)
        errors = sum(1 for r in snapshot if not r.success)
        active_users = {r.user_id for r in snapshot if r.user_id and now - r.timestamp <= _DAY_SECONDS}

        return {
            "total_events": len(snapshot),
            "token_generations": by_type.get("token_generation", 0),
            "token_validations": by_type.get("token_validation", 0),
            "sessions_created": by_type.get("session_created", 0),
            "sign_ins": by_type.get("sign_in", 0),
            "errors": errors,
            "error_rate": round(errors / len(snapshot), 4) if snapshot else 0.0,
            "active_users_24h": len(active_users),
            "by_type": dict(by_type),
            "by_domain": dict(by_domain),
        }

    def health_status(self) -> dict:
        """healthy / degraded / unhealthy from the last hour's error rate."""
        now = self._clock()
        with self._lock:
            recent = [r for r in self._ring if now - r.timestamp <= 3600]
        errors = sum(1 for r in recent if not r.success)
        rate = errors / len(recent) if recent else 0.0

        if rate >= _UNHEALTHY_ERROR_RATE:
            status = "unhealthy"
        elif rate >= _DEGRADED_ERROR_RATE:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "error_rate_1h": round(rate, 4),
            "events_1h": len(recent),
            "persistent_store": self._store.ping() if self._store is not None else None,
        }
