"""
auth/tokens.py -- PKCE, OAuth state, CSRF, identifier and cookie utilities.

Security design decisions:
  PKCE: 128 random bytes, base64url without padding, truncated to the 128
       character ceiling RFC 7636 sets for a code_verifier. The S256 challenge
       is derived with authlib's RFC 7636 helper so the encoding matches what
       every compliant provider recomputes on its side.

  OAuth state: a compact JWS (python-jose, HS256, SECRET_KEY). The payload
       segment is base64url(JSON) of the OAuthState; the signature stops a
       client from forging a fresh issued_at or swapping the provider.
       validate_state() never raises -- every failure comes back as
       StateValidation(ok=False, reason=...) so callers cannot forget to fail
       closed.

  Identifiers: secrets.token_hex / token_urlsafe only. Never random.random,
       never timestamps -- the original session ids were guessable.

  Cookies: the session cookie is scoped to the shared parent domain
       (COOKIE_DOMAIN) so both origins read it. httponly + samesite=lax.

Layer rule: no imports from api/, crossdomain/, sessions/, or monitor/.
Import from core/ is allowed -- core/ is the kernel.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from collections.abc import Mapping
from dataclasses import asdict

from authlib.oauth2.rfc7636 import create_s256_code_challenge
from jose import jws
from jose.exceptions import JWSError

from auth.models import OAuthState, PKCEPair, StateValidation
from core.config import get_settings

logger = logging.getLogger("crossauth.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

_CODE_VERIFIER_BYTES = 128
_CODE_VERIFIER_MAX_LEN = 128

# Headers that feed the device fingerprint. Order matters: it is part of the
# hashed payload.
_FINGERPRINT_HEADERS = ("user-agent", "accept-language", "accept-encoding", "connection")

CSRF_COOKIE_NAME = "csrf_token"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------


def generate_pkce() -> PKCEPair:
    """Return a fresh PKCE pair. The caller stores code_verifier; nothing else does."""
    verifier = _b64url(secrets.token_bytes(_CODE_VERIFIER_BYTES))[:_CODE_VERIFIER_MAX_LEN]
    return PKCEPair(code_verifier=verifier, code_challenge=create_s256_code_challenge(verifier))


# ---------------------------------------------------------------------------
# OAuth state
# ---------------------------------------------------------------------------


def generate_state(
    provider: str,
    redirect_to: str | None = None,
    device_fingerprint: str | None = None,
    now: float | None = None,
) -> str:
    """Build and sign an OAuthState. No storage side effect.

    The caller persists the returned string (httpOnly cookie) for the
    double-submit comparison in validate_state().
    """
    state = OAuthState(
        nonce=secrets.token_urlsafe(32),
        provider=provider,
        issued_at=time.time() if now is None else now,
        redirect_to=redirect_to,
        device_fingerprint=device_fingerprint,
    )
    return jws.sign(asdict(state), _settings.secret_key, algorithm=_ALGORITHM)


def decode_state(state: str) -> OAuthState | None:
    """Verify the signature and decode the payload. Returns None on any failure."""
    try:
        payload = json.loads(jws.verify(state, _settings.secret_key, algorithms=[_ALGORITHM]))
        return OAuthState(
            nonce=str(payload["nonce"]),
            provider=str(payload["provider"]),
            issued_at=float(payload["issued_at"]),
            redirect_to=payload.get("redirect_to"),
            device_fingerprint=payload.get("device_fingerprint"),
        )
    except (JWSError, ValueError, KeyError, TypeError, AttributeError):
        return None


def validate_state(
    state: str,
    provider: str,
    current_fingerprint: str | None = None,
    stored_state: str | None = None,
    now: float | None = None,
) -> StateValidation:
    """Validate an OAuth state returned on the callback. Fails closed.

    Checks, in order: signature/decoding, provider equality, age against
    OAUTH_STATE_MAX_AGE_SECONDS, bound device fingerprint, and -- when the
    client-side copy is available -- double-submit equality.
    """
    decoded = decode_state(state) if state else None
    if decoded is None:
        return StateValidation(ok=False, reason="malformed")

    if decoded.provider != provider:
        return StateValidation(ok=False, reason="provider_mismatch", state=decoded)

    current = time.time() if now is None else now
    if current - decoded.issued_at > _settings.oauth_state_max_age_seconds:
        return StateValidation(ok=False, reason="expired", state=decoded)

    if decoded.device_fingerprint and decoded.device_fingerprint != current_fingerprint:
        return StateValidation(ok=False, reason="fingerprint_mismatch", state=decoded)

    if stored_state is not None and not hmac.compare_digest(stored_state, state):
        return StateValidation(ok=False, reason="stored_state_mismatch", state=decoded)

    return StateValidation(ok=True, state=decoded)


def state_cookie_name(provider: str) -> str:
    return f"oauth_state_{provider}"


def pkce_cookie_name(provider: str) -> str:
    return f"pkce_verifier_{provider}"


def safe_redirect_path(path: str | None) -> str:
    """Post-login redirect target. Only server-local paths are accepted. [C2]

    Rejects absolute URLs, protocol-relative "//host" and backslash tricks
    ("/\\host") that some browsers normalize into an off-site redirect.
    """
    if path and path.startswith("/") and not path.startswith("//") and "\\" not in path:
        return path
    return "/"


# ---------------------------------------------------------------------------
# Device fingerprint
# ---------------------------------------------------------------------------


def device_fingerprint(headers: Mapping[str, str]) -> str:
    """Derive a weak continuity signal from request headers.

    Not an identity proof: two browsers of the same build on the same locale
    collide. 16 hex chars is plenty for a same-user comparison.
    """
    data = {name: headers.get(name, "") or "" for name in _FINGERPRINT_HEADERS}
    digest = hashlib.sha256(json.dumps(data, sort_keys=True).encode("utf-8")).hexdigest()
    return digest[:16]


# ---------------------------------------------------------------------------
# Identifiers and CSRF
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return f"sess_{secrets.token_urlsafe(32)}"


def generate_transfer_token_id() -> str:
    """32 random bytes as 64 hex chars -- the cross-domain token id."""
    return secrets.token_hex(32)


def generate_event_id() -> str:
    return f"evt_{secrets.token_hex(12)}"


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(16)


def csrf_tokens_match(submitted: str | None, stored: str | None) -> bool:
    """Constant-time comparison. Empty values never match."""
    if not submitted or not stored:
        return False
    return hmac.compare_digest(submitted, stored)


def hash_operator_key(raw_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_key) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_key.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_id: str, max_age: int = 0) -> None:
    """Write the cross-domain session cookie on the response.

    domain=COOKIE_DOMAIN: readable by both origins under the parent domain.
    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level cross-site navigations (the redirect
        hop between origins) but not on cross-site POST.
    max_age: defaults to SESSION_MAX_AGE_SECONDS (24h); remember-me sessions
        pass their own 30-day lifetime.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=session_id,
        domain=_settings.cookie_domain or None,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age if max_age > 0 else _settings.session_max_age_seconds,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        _settings.session_cookie_name,
        domain=_settings.cookie_domain or None,
        path="/",
    )


def set_csrf_cookie(response, token: str) -> None:
    response.set_cookie(
        CSRF_COOKIE_NAME,
        value=token,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.csrf_token_max_age_seconds,
    )


def set_oauth_cookies(response, provider: str, state: str, code_verifier: str) -> None:
    """Store the state (double-submit copy) and the PKCE verifier client-side.

    Both live only as long as the state itself is valid and are scoped to the
    auth origin (no domain attribute).
    """
    for name, value in ((state_cookie_name(provider), state), (pkce_cookie_name(provider), code_verifier)):
        response.set_cookie(
            name,
            value=value,
            path="/",
            httponly=True,
            samesite="lax",
            secure=_settings.secure_cookies,
            max_age=_settings.oauth_state_max_age_seconds,
        )


def clear_oauth_cookies(response, provider: str) -> None:
    response.delete_cookie(state_cookie_name(provider), path="/")
    response.delete_cookie(pkce_cookie_name(provider), path="/")
