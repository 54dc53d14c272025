"""
api/routes/v1/auth.py -- Sign-in, OAuth and session lifecycle endpoints.

Routes:
  POST   /api/v1/auth/sign-in                    -- password sign-in via the IdP; sets session cookie
  GET    /api/v1/auth/oauth/{provider}/start     -- PKCE + signed state, 302 to the IdP
  GET    /api/v1/auth/oauth/{provider}/callback  -- validate state, exchange code, set cookie
  GET    /api/v1/auth/session                    -- validate the current session cookie
  POST   /api/v1/auth/session/refresh            -- rotate the session id
  POST   /api/v1/auth/sign-out                   -- terminate session, revoke transfer tokens, clear cookie
  GET    /api/v1/auth/sessions                   -- list the caller's active sessions
  DELETE /api/v1/auth/sessions                   -- terminate every session except the current one

Security:
  [H1] Unverified email never gets a session, on either sign-in path.
  [H2] POST /sign-in is rate-limited per IP (SIGN_IN_RATE_LIMIT).
  [C2] OAuth redirect_to is reduced to a server-local path.
  [M5] Cache-Control: no-store on every response that sets a session cookie.
  Locked accounts and blocked IPs are refused before the IdP is called.
  Failed sign-ins are reported to the SecurityMonitor keyed by the
  normalized email: the IdP does not reveal a user id for a failed attempt.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import SIGN_IN_LIMIT, limiter
from api.models import (
    CountResponse,
    RefreshResponse,
    SessionInfo,
    SessionListResponse,
    SessionResponse,
    SignInRequest,
    SignInResponse,
)
from auth.dependencies import client_ip, get_current_session, session_id_from_request
from auth.models import AuthenticatedSession, ProviderSession
from auth.tokens import (
    clear_oauth_cookies,
    clear_session_cookie,
    device_fingerprint,
    generate_pkce,
    generate_state,
    pkce_cookie_name,
    safe_redirect_path,
    set_oauth_cookies,
    set_session_cookie,
    state_cookie_name,
    validate_state,
)
from core.config import get_settings
from core.errors import (
    AccountLockedError,
    EmailNotVerifiedError,
    ExpiredError,
    InvalidCredentialsError,
    NotFoundError,
    UpstreamError,
    ValidationFailure,
)

logger = logging.getLogger("crossauth.api.auth")

# Auth policy:
# - POST   /auth/sign-in:                   public, rate-limited
# - GET    /auth/oauth/{provider}/start:    public
# - GET    /auth/oauth/{provider}/callback: public, state + PKCE verified
# - GET    /auth/session:                   requires session (get_current_session)
# - POST   /auth/session/refresh:           requires session (get_current_session)
# - POST   /auth/sign-out:                  public -- clearing a cookie needs no prior auth
# - GET    /auth/sessions:                  requires session
# - DELETE /auth/sessions:                  requires session
router = APIRouter()


def _ensure_allowed(request: Request, subject: str) -> None:
    """Refuse blocked IPs and locked accounts. Raises before any session exists."""
    security = request.app.state.security_store
    ip = client_ip(request)
    if security.is_ip_blocked(ip):
        request.app.state.audit.emit("sign_in", user_id=subject, metadata={"reason": "ip_blocked", "ip_address": ip}, success=False)
        raise ValidationFailure(f"ip {ip} is blocked")
    locked, retry_after = security.lock_status(subject)
    if locked:
        request.app.state.audit.emit("sign_in", user_id=subject, metadata={"reason": "account_locked"}, success=False)
        raise AccountLockedError(f"account {subject} is locked", retry_after_seconds=retry_after)


def _start_session(request: Request, provider_session: ProviderSession, remember_me: bool, method: str):
    """Shared tail of every sign-in path: [H1] check, lock check, session creation."""
    user = provider_session.user
    if not user.email_verified:
        request.app.state.audit.emit("sign_in", user_id=user.id, metadata={"reason": "email_not_verified", "method": method}, success=False)
        raise EmailNotVerifiedError(f"user {user.id} has not verified their email")
    _ensure_allowed(request, user.id)

    session = request.app.state.sessions.create_session(
        user.id,
        device_fingerprint(request.headers),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        remember_me=remember_me,
        refresh_handle=provider_session.refresh_token,
        access_handle=provider_session.access_token,
        provider_expires_at=provider_session.expires_at,
    )
    request.app.state.audit.emit("sign_in", user_id=user.id, metadata={"method": method, "remember_me": remember_me})
    account = request.app.state.security_store.get_account(user.id)
    return session, account.mfa_required


# ---------------------------------------------------------------------------
# Password sign-in
# ---------------------------------------------------------------------------


@limiter.limit(SIGN_IN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/sign-in", response_model=SignInResponse)
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password through the Identity Provider.

    Sync handler: the IdP call blocks (bounded by its timeout), so FastAPI
    runs this in the threadpool instead of on the event loop.
    """
    _ensure_allowed(request, body.email)
    try:
        provider_session = request.app.state.identity_provider.sign_in_with_password(body.email, body.password)
    except InvalidCredentialsError:
        logger.info("Password sign-in rejected for %s from %s", body.email, client_ip(request))
        request.app.state.audit.emit("sign_in", user_id=body.email, metadata={"reason": "invalid_credentials"}, success=False)
        request.app.state.monitor.report_failed_login(
            body.email, ip_address=client_ip(request), user_agent=request.headers.get("user-agent")
        )
        raise

    session, mfa_required = _start_session(request, provider_session, body.remember_me, "password")
    resp = JSONResponse(
        content=SignInResponse(
            user_id=session.user_id,
            expires_at=session.expires_at,
            mfa_required=mfa_required,
        ).model_dump()
    )
    set_session_cookie(resp, session.session_id, max_age=int(session.expires_at - session.created_at))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# OAuth (authorization code + PKCE)
# ---------------------------------------------------------------------------


def _check_provider(provider: str) -> None:
    if provider not in get_settings().oauth_providers:
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": f"OAuth provider '{provider}' is not enabled."},
        )


def _callback_url(provider: str) -> str:
    return f"https://{get_settings().auth_domain}/api/v1/auth/oauth/{provider}/callback"


@router.get("/auth/oauth/{provider}/start")
async def oauth_start(request: Request, provider: str, redirect_to: str | None = None) -> RedirectResponse:
    """Redirect to the IdP's authorize endpoint.

    The state is signed and bound to the device fingerprint; a copy goes into
    an httpOnly cookie for the double-submit check. The PKCE verifier stays in
    its own httpOnly cookie -- only the challenge leaves this origin.
    """
    _check_provider(provider)
    pkce = generate_pkce()
    state = generate_state(
        provider,
        redirect_to=safe_redirect_path(redirect_to),  # [C2]
        device_fingerprint=device_fingerprint(request.headers),
    )
    url = request.app.state.identity_provider.authorize_url(provider, _callback_url(provider), pkce.code_challenge, state)
    resp = RedirectResponse(url, status_code=302)
    set_oauth_cookies(resp, provider, state, pkce.code_verifier)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/oauth/{provider}/callback")
def oauth_callback(
    request: Request,
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """Validate the returned state, exchange the code, start a session.

    Every state failure is audited with its specific reason and answered
    with the same generic 403.
    """
    _check_provider(provider)
    audit = request.app.state.audit
    if error:
        audit.emit("oauth_callback", metadata={"provider": provider, "reason": "provider_error", "error": error[:64]}, success=False)
        raise ValidationFailure(f"provider returned error {error!r}")

    result = validate_state(
        state or "",
        provider,
        current_fingerprint=device_fingerprint(request.headers),
        stored_state=request.cookies.get(state_cookie_name(provider), ""),
    )
    if not result.ok:
        audit.emit("oauth_state_validation", metadata={"provider": provider, "reason": result.reason}, success=False)
        raise ValidationFailure(f"oauth state rejected: {result.reason}")

    verifier = request.cookies.get(pkce_cookie_name(provider))
    if not code or not verifier:
        audit.emit("oauth_callback", metadata={"provider": provider, "reason": "missing_code_or_verifier"}, success=False)
        raise ValidationFailure("missing authorization code or PKCE verifier")

    provider_session = request.app.state.identity_provider.exchange_oauth_code(code, verifier)
    session, _mfa_required = _start_session(request, provider_session, False, f"oauth:{provider}")

    resp = RedirectResponse(safe_redirect_path(result.state.redirect_to), status_code=303)
    set_session_cookie(resp, session.session_id)
    clear_oauth_cookies(resp, provider)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=SessionResponse)
async def get_session(request: Request, current: AuthenticatedSession = Depends(get_current_session)) -> SessionResponse:
    """Return the validated session. needs_refresh tells the client to call /refresh."""
    session = request.app.state.sessions.get(current.session_id)
    if session is None:
        raise NotFoundError("session vanished after validation")
    return SessionResponse(
        user_id=current.user_id,
        expires_at=session.expires_at,
        needs_refresh=current.needs_refresh,
        refresh_count=session.refresh_count,
    )


@router.post("/auth/session/refresh", response_model=RefreshResponse)
def refresh_session(request: Request, current: AuthenticatedSession = Depends(get_current_session)) -> JSONResponse:
    """Rotate the session id. The old cookie value stops working immediately.

    On failure the session is already terminated by the manager; the cookie
    is cleared and the error says whether a retry (fresh sign-in) can help.
    """
    result = request.app.state.sessions.refresh_session(current.session_id)
    if not result.ok:
        if result.retryable:
            raise UpstreamError(result.error)
        if result.error == "session not found":
            raise NotFoundError(result.error)
        raise ExpiredError(result.error)

    resp = JSONResponse(content=RefreshResponse(expires_at=result.new_expires_at).model_dump())
    session = request.app.state.sessions.get(result.new_session_id)
    max_age = int(session.expires_at - session.last_activity_at) if session else 0
    set_session_cookie(resp, result.new_session_id, max_age=max_age)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/sign-out")
async def sign_out(request: Request) -> JSONResponse:
    """Terminate the current session and revoke the user's transfer tokens.

    Always 200 and always clears the cookie, whether or not the session was
    still valid.
    """
    session_id = session_id_from_request(request)
    if session_id:
        session = request.app.state.sessions.get(session_id)
        request.app.state.sessions.terminate_session(session_id, "user_signout")
        if session is not None:
            request.app.state.transfer_tokens.revoke_all_for_user(session.user_id)
            request.app.state.audit.emit("sign_out", user_id=session.user_id)

    resp = JSONResponse(content={"message": "Signed out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request, current: AuthenticatedSession = Depends(get_current_session)) -> SessionListResponse:
    manager = request.app.state.sessions
    return SessionListResponse(
        sessions=[SessionInfo.from_session(s, current.session_id) for s in manager.get_user_sessions(current.user_id)],
        max_concurrent_sessions=manager.max_concurrent_sessions,
    )


@router.delete("/auth/sessions", response_model=CountResponse)
async def terminate_other_sessions(
    request: Request, current: AuthenticatedSession = Depends(get_current_session)
) -> CountResponse:
    count = request.app.state.sessions.terminate_all_user_sessions(
        current.user_id, except_session_id=current.session_id, reason="user_requested"
    )
    return CountResponse(count=count)

