"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credentials are recognized:
  1. Session cookie (SESSION_COOKIE_NAME) -- set by sign-in, OAuth callback
     and transfer-token validation. Validated through the SessionManager on
     app.state, bound to the request's device fingerprint.
  2. X-API-Key header -- operators only, for the monitoring endpoints.
     Compared as HMAC digests so the comparison is constant time.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_operator() raises HTTP 403 unless the X-API-Key matches
OPERATOR_API_KEY.

Layer rule: stores are reached only through request.app.state; this module
never imports api/, crossdomain/, sessions/, or monitor/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from auth.models import AuthenticatedSession
from auth.tokens import device_fingerprint, hash_operator_key
from core.config import get_settings
from core.errors import GENERIC_USER_MESSAGE


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def session_id_from_request(request: Request) -> str | None:
    return request.cookies.get(get_settings().session_cookie_name) or None


def try_get_current_session(request: Request) -> AuthenticatedSession | None:
    """Validate the session cookie against the request's fingerprint.

    Returns None on any failure. The SessionManager has already terminated
    the session (and reported the security event) for expiry and fingerprint
    mismatch by the time this returns.
    """
    session_id = session_id_from_request(request)
    if not session_id:
        return None
    result = request.app.state.sessions.validate_session(session_id, device_fingerprint(request.headers))
    if not result.valid:
        return None
    return AuthenticatedSession(session_id=session_id, user_id=result.user_id, needs_refresh=result.needs_refresh)


def get_current_session(request: Request) -> AuthenticatedSession:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(current: AuthenticatedSession = Depends(get_current_session)): ...
    """
    current = try_get_current_session(request)
    if current is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_session", "message": GENERIC_USER_MESSAGE},
        )
    return current


def require_operator(request: Request) -> None:
    """Require the operator API key. Raises HTTP 403 if absent, wrong, or not configured.

    Use as a FastAPI dependency:
        @router.get("/auth/monitoring", dependencies=[Depends(require_operator)])
    """
    configured = get_settings().operator_api_key
    raw_key = request.headers.get("X-API-Key", "")
    if not configured or not raw_key or not hmac.compare_digest(hash_operator_key(raw_key), hash_operator_key(configured)):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Operator access required."},
        )
