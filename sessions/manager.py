"""
sessions/manager.py -- Authoritative in-memory record of active sessions.

State machine per session:

    Active -> (Refreshed -> Active)* -> Terminated | Expired

Invariants:
  - At most max_concurrent_sessions per user. Creating one more evicts the
    single oldest by created_at (reason "concurrent_limit_exceeded") inside
    the same critical section as the insert.
  - Refresh rotates the session id. The old id is removed and the new one
    inserted under one lock acquisition, so no validator ever sees both (or
    neither) as valid.
  - The Identity Provider refresh is the only blocking call. It runs outside
    the lock; a failure terminates the session ("refresh_failed").
  - Termination is idempotent and never silent: every call emits a
    session_terminated audit record, with success=False and duration None
    when the session was already gone.

Security events (fingerprint mismatch, concurrency eviction) are reported
through an optional callback wired by the app lifespan to
SecurityMonitor.record_event. The callback always runs after the session lock
is released so monitor actions may call back into this manager. A
fingerprint mismatch also revokes the user's outstanding transfer tokens
when a token store is injected.

Layer rule: no imports from api/, crossdomain/, or monitor/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Protocol

from auth.audit import AuditLog
from auth.provider import IdentityProvider
from auth.tokens import generate_session_id
from core.errors import AuthCoreError, UpstreamError
from sessions.models import Session, SessionRefresh, SessionValidation

logger = logging.getLogger("crossauth.sessions")

_DAY = 24 * 60 * 60

ERR_NOT_FOUND = "session not found"
ERR_EXPIRED = "session expired"
ERR_SECURITY = "security validation failed"
ERR_REFRESH = "refresh failed"

# (user_id, event_type, severity, metadata, ip_address, user_agent) -> event id
EventReporter = Callable[..., str]


class TokenRevoker(Protocol):
    def revoke_all_for_user(self, user_id: str) -> int: ...


class SessionManager:
    """Create, validate, rotate and terminate sessions.

    Usage:
        manager = SessionManager(audit, provider)
        session = manager.create_session("user-1", fingerprint, ip_address="203.0.113.7")
        result = manager.validate_session(session.session_id, fingerprint)
        if result.needs_refresh:
            refreshed = manager.refresh_session(session.session_id)
    """

    def __init__(
        self,
        audit: AuditLog,
        provider: IdentityProvider | None = None,
        max_concurrent_sessions: int = 3,
        max_age: int = _DAY,
        remember_me_max_age: int = 30 * _DAY,
        refresh_threshold: int = 10 * 60,
        device_tracking_enabled: bool = True,
        transfer_tokens: TokenRevoker | None = None,
        clock=time.time,
    ) -> None:
        self.max_concurrent_sessions = max_concurrent_sessions
        self.max_age = max_age
        self.remember_me_max_age = remember_me_max_age
        self.refresh_threshold = refresh_threshold
        self.device_tracking_enabled = device_tracking_enabled
        self._audit = audit
        self._provider = provider
        self._transfer_tokens = transfer_tokens
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._report_event: EventReporter | None = None

    def attach_event_reporter(self, reporter: EventReporter | None) -> None:
        self._report_event = reporter

    def _lifetime(self, remember_me: bool) -> int:
        return self.remember_me_max_age if remember_me else self.max_age

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        device_fingerprint: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
        refresh_handle: str | None = None,
        access_handle: str | None = None,
        provider_expires_at: float | None = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            session_id=generate_session_id(),
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self._lifetime(remember_me),
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
            refresh_handle=refresh_handle,
            access_handle=access_handle,
            provider_expires_at=provider_expires_at,
        )

        evicted: Session | None = None
        with self._lock:
            existing = [s for s in self._sessions.values() if s.user_id == user_id]
            if len(existing) >= self.max_concurrent_sessions:
                oldest = min(existing, key=lambda s: s.created_at)
                evicted = self._sessions.pop(oldest.session_id)
            self._sessions[session.session_id] = session

        if evicted is not None:
            self._audit_termination(evicted.session_id, "concurrent_limit_exceeded", evicted, now)
            self._report(
                user_id,
                "concurrent_session_limit_exceeded",
                "low",
                {"evicted_session_id": evicted.session_id[:12], "limit": self.max_concurrent_sessions},
                ip_address,
                user_agent,
            )

        self._audit.emit(
            "session_created",
            user_id=user_id,
            metadata={
                "session_id": session.session_id[:12],
                "remember_me": remember_me,
                "device_fingerprint": device_fingerprint,
                "ip_address": ip_address,
            },
        )
        return session

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_session(self, session_id: str, current_fingerprint: str | None = None) -> SessionValidation:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id) if session_id else None
            if session is None:
                return SessionValidation(error=ERR_NOT_FOUND)
            expired = now > session.expires_at
            mismatch = (
                not expired
                and self.device_tracking_enabled
                and current_fingerprint is not None
                and current_fingerprint != session.device_fingerprint
            )
            if not expired and not mismatch:
                session.last_activity_at = now
                return SessionValidation(
                    user_id=session.user_id,
                    needs_refresh=(session.expires_at - now) < self.refresh_threshold,
                )

        if expired:
            self.terminate_session(session_id, "session_expired")
            return SessionValidation(error=ERR_EXPIRED)

        # Only the caller that actually removed the session reports, so two
        # concurrent mismatching validations still produce one event.
        if not self.terminate_session(session_id, "device_fingerprint_mismatch"):
            return SessionValidation(error=ERR_SECURITY)
        if self._transfer_tokens is not None:
            self._transfer_tokens.revoke_all_for_user(session.user_id)
        self._report(
            session.user_id,
            "device_fingerprint_mismatch",
            "high",
            {
                "session_id": session_id[:12],
                "expected_fingerprint": session.device_fingerprint,
                "actual_fingerprint": current_fingerprint,
            },
            session.ip_address,
            session.user_agent,
        )
        return SessionValidation(error=ERR_SECURITY)

    # ------------------------------------------------------------------
    # Refresh (rotation)
    # ------------------------------------------------------------------

    def refresh_session(self, session_id: str) -> SessionRefresh:
        with self._lock:
            session = self._sessions.get(session_id) if session_id else None
            if session is None:
                return SessionRefresh(error=ERR_NOT_FOUND)
            expired = self._clock() > session.expires_at
            refresh_handle = session.refresh_handle

        # Expired is final: an unswept session is cleaned up, never revived.
        if expired:
            self.terminate_session(session_id, "session_expired")
            return SessionRefresh(error=ERR_EXPIRED)

        if not refresh_handle or self._provider is None:
            self.terminate_session(session_id, "refresh_failed")
            return SessionRefresh(error=ERR_REFRESH)

        # Blocking provider call, bounded by the client's timeout. No lock held.
        try:
            provider_session = self._provider.refresh_provider_session(refresh_handle)
        except AuthCoreError as e:
            logger.warning("Provider refresh failed for session %s: %s", session_id[:12], e)
            self.terminate_session(session_id, "refresh_failed")
            return SessionRefresh(error=ERR_REFRESH, retryable=isinstance(e, UpstreamError))

        now = self._clock()
        with self._lock:
            current = self._sessions.pop(session_id, None)
            if current is None:
                # Terminated while the provider call was in flight.
                return SessionRefresh(error=ERR_NOT_FOUND)
            rotated = replace(
                current,
                session_id=generate_session_id(),
                last_activity_at=now,
                expires_at=now + self._lifetime(current.remember_me),
                refresh_count=current.refresh_count + 1,
                refresh_handle=provider_session.refresh_token,
                access_handle=provider_session.access_token,
                provider_expires_at=provider_session.expires_at,
            )
            self._sessions[rotated.session_id] = rotated

        self._audit.emit(
            "session_refreshed",
            user_id=rotated.user_id,
            metadata={
                "old_session_id": session_id[:12],
                "new_session_id": rotated.session_id[:12],
                "refresh_count": rotated.refresh_count,
                "provider_expires_at": provider_session.expires_at,
            },
        )
        return SessionRefresh(new_session_id=rotated.session_id, new_expires_at=rotated.expires_at)

    # ------------------------------------------------------------------
    # Terminate
    # ------------------------------------------------------------------

    def terminate_session(self, session_id: str, reason: str) -> bool:
        """Remove a session. Idempotent; always audited. Returns True if it existed."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        self._audit_termination(session_id, reason, session, self._clock())
        return session is not None

    def terminate_all_user_sessions(
        self,
        user_id: str,
        except_session_id: str | None = None,
        reason: str = "user_requested",
    ) -> int:
        with self._lock:
            doomed = [
                sid for sid, s in self._sessions.items() if s.user_id == user_id and sid != except_session_id
            ]
        count = sum(1 for sid in doomed if self.terminate_session(sid, reason))
        self._audit.emit(
            "bulk_session_termination",
            user_id=user_id,
            metadata={"reason": reason, "terminated": count, "kept_session_id": _short(except_session_id)},
        )
        return count

    def sweep(self) -> int:
        """Terminate every expired session, independent of access patterns."""
        now = self._clock()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if now > s.expires_at]
        count = sum(1 for sid in expired if self.terminate_session(sid, "automatic_cleanup"))
        if count:
            logger.info("Session sweep terminated %d expired session(s)", count)
        return count

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session is not None else None

    def get_user_sessions(self, user_id: str) -> list[Session]:
        """Active sessions for a user, oldest first. Returns copies."""
        with self._lock:
            sessions = [replace(s) for s in self._sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: s.created_at)

    def stats(self) -> dict:
        with self._lock:
            sessions = list(self._sessions.values())
        return {
            "active_sessions": len(sessions),
            "active_users": len({s.user_id for s in sessions}),
            "remember_me_sessions": sum(1 for s in sessions if s.remember_me),
            "max_concurrent_sessions": self.max_concurrent_sessions,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _audit_termination(self, session_id: str, reason: str, session: Session | None, now: float) -> None:
        self._audit.emit(
            "session_terminated",
            user_id=session.user_id if session else None,
            metadata={
                "session_id": _short(session_id),
                "reason": reason,
                "duration_seconds": round(now - session.created_at, 3) if session else None,
            },
            success=session is not None,
        )

    def _report(self, user_id, event_type, severity, metadata, ip_address=None, user_agent=None) -> None:
        if self._report_event is None:
            return
        try:
            self._report_event(
                user_id,
                event_type,
                severity=severity,
                metadata=metadata,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except Exception:
            logger.exception("Failed to report %s for user %s", event_type, user_id)


def _short(value: str | None) -> str | None:
    return value[:12] if value else None
