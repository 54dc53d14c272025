"""
sessions/models.py -- Session dataclasses and the result shapes of the manager.

Layer rule: no imports from api/, crossdomain/, or monitor/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Session:
    """An active local session.

    Mutated only by SessionManager: last_activity_at on validation, and a
    full replacement (new session_id, refresh_count + 1) on refresh.
    """

    session_id: str
    user_id: str
    device_fingerprint: str
    created_at: float
    last_activity_at: float
    expires_at: float
    ip_address: str | None = None
    user_agent: str | None = None
    refresh_count: int = 0
    remember_me: bool = False
    refresh_handle: str | None = None
    # Provider-level access handle and its expiry; copied into transfer tokens.
    access_handle: str | None = None
    provider_expires_at: float | None = None


@dataclass
class SessionValidation:
    """Outcome of validate_session(). error is None only on success."""

    user_id: str | None = None
    needs_refresh: bool = False
    error: str | None = None

    @property
    def valid(self) -> bool:
        return self.error is None


@dataclass
class SessionRefresh:
    """Outcome of refresh_session().

    retryable is True only when the Identity Provider failed; the session is
    terminated either way, so the caller retries with a fresh sign-in.
    """

    new_session_id: str | None = None
    new_expires_at: float | None = None
    error: str | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None
