"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these only own the shape.

Layer rule: no imports from api/, crossdomain/, sessions/, or monitor/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class PKCEPair:
    """RFC 7636 verifier/challenge pair for one authorization attempt.

    code_verifier never leaves the initiating client; only code_challenge is
    sent to the provider.
    """

    code_verifier: str
    code_challenge: str
    method: str = "S256"


@dataclass
class OAuthState:
    """Payload carried through the OAuth round trip in the `state` parameter."""

    nonce: str
    provider: str
    issued_at: float
    redirect_to: str | None = None
    device_fingerprint: str | None = None


@dataclass
class StateValidation:
    """Outcome of validate_state(). reason is None only when ok is True."""

    ok: bool
    reason: str | None = None
    state: OAuthState | None = None


@dataclass
class ProviderUser:
    id: str
    email: str | None = None
    email_verified: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderSession:
    """A session as issued by the Identity Provider.

    expires_at is epoch seconds -- the provider's own expiry for the access
    handle, copied into transfer tokens at issuance.
    """

    access_token: str
    refresh_token: str
    expires_at: float
    user: ProviderUser


@dataclass
class AuthenticatedSession:
    """What a route sees after the session cookie has been validated."""

    session_id: str
    user_id: str
    needs_refresh: bool = False


@dataclass
class AuditRecord:
    type: str
    domain: str
    timestamp: float
    success: bool = True
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AccountSecurity:
    """Lock and MFA state for one user.

    locked_until None with is_locked True means a permanent lock that only an
    operator can lift.
    """

    user_id: str
    is_locked: bool = False
    locked_until: float | None = None
    locked_reason: str | None = None
    mfa_required: bool = False
    mfa_required_reason: str | None = None
    updated_at: float | None = None


@dataclass
class BlockedIP:
    ip_address: str
    reason: str
    blocked_at: float
