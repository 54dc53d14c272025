"""
api/routes/v1/crossdomain.py -- Cross-origin session handoff endpoints.

Routes:
  GET    /api/v1/auth/cross-domain/csrf   -- issue a CSRF token (cookie + body)
  POST   /api/v1/auth/cross-domain/token  -- mint a transfer token, return the redirect URL
  GET    /api/v1/auth/cross-domain/token  -- validate (and consume) a transfer token, set cookie
  DELETE /api/v1/auth/cross-domain/token  -- revoke every transfer token of the caller

Protocol:
  auth origin   GET csrf -> POST token {csrf_token} -> 200 {redirect_url}
  browser       navigates to https://app.../auth/callback?auth_token=...&timestamp=...
  app origin    GET token?auth_token=... -> session cookie + clean_url

Security:
  Origin header must be in ALLOWED_ORIGINS for csrf and POST token. A missing
  Origin is rejected too: both are fetch() calls from our own pages.
  CSRF token compared in constant time; a mismatch is recorded as a
  csrf_validation_failed security event, never silently dropped.
  GET token always consumes: a transfer token establishes at most one session.
  An unknown and an expired token get the same 401.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import TOKEN_LIMIT, limiter
from api.models import CountResponse, CsrfResponse, TransferTokenRequest, TransferTokenResponse, TransferValidationResponse
from auth.dependencies import client_ip, get_current_session
from auth.models import AuthenticatedSession, ProviderSession, ProviderUser
from auth.tokens import (
    CSRF_COOKIE_NAME,
    csrf_tokens_match,
    device_fingerprint,
    generate_csrf_token,
    set_csrf_cookie,
    set_session_cookie,
)
from core.config import get_settings
from core.errors import AccountLockedError, NotFoundError, ValidationFailure
from crossdomain.store import strip_redirect_params

logger = logging.getLogger("crossauth.api.crossdomain")

# Auth policy:
# - GET    /auth/cross-domain/csrf:   requires session + allowed Origin
# - POST   /auth/cross-domain/token:  requires session + allowed Origin + CSRF, rate-limited
# - GET    /auth/cross-domain/token:  public -- the transfer token IS the credential, rate-limited
# - DELETE /auth/cross-domain/token:  requires session
router = APIRouter()


def _require_allowed_origin(request: Request) -> None:
    origin = request.headers.get("origin")
    if not origin or origin not in get_settings().allowed_origins:
        logger.warning("Rejected cross-domain request from origin %r", origin)
        raise HTTPException(
            status_code=403,
            detail={"code": "invalid_origin", "message": "Origin not allowed."},
        )


@router.get("/auth/cross-domain/csrf", response_model=CsrfResponse)
async def issue_csrf(request: Request, current: AuthenticatedSession = Depends(get_current_session)) -> JSONResponse:
    _require_allowed_origin(request)
    token = generate_csrf_token()
    max_age = get_settings().csrf_token_max_age_seconds
    resp = JSONResponse(content=CsrfResponse(csrf_token=token, expires_in=max_age).model_dump())
    set_csrf_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return resp


@limiter.limit(TOKEN_LIMIT)
@router.post("/auth/cross-domain/token", response_model=TransferTokenResponse)
async def mint_transfer_token(
    request: Request,
    body: TransferTokenRequest,
    current: AuthenticatedSession = Depends(get_current_session),
) -> JSONResponse:
    """Mint a transfer token for the caller's session and build the redirect URL."""
    _require_allowed_origin(request)
    if not csrf_tokens_match(body.csrf_token, request.cookies.get(CSRF_COOKIE_NAME)):
        request.app.state.audit.emit(
            "csrf_validation", user_id=current.user_id, metadata={"route": "cross-domain/token"}, success=False
        )
        request.app.state.monitor.record_event(
            current.user_id,
            "csrf_validation_failed",
            "medium",
            {"route": "cross-domain/token"},
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        raise ValidationFailure("csrf token mismatch")

    session = request.app.state.sessions.get(current.session_id)
    if session is None:
        raise NotFoundError("session vanished after validation")

    provider_session = ProviderSession(
        access_token=session.access_handle or "",
        refresh_token=session.refresh_handle or "",
        expires_at=session.provider_expires_at or session.expires_at,
        user=ProviderUser(id=session.user_id),
    )
    store = request.app.state.transfer_tokens
    token_id = store.issue(provider_session, session_id=session.session_id)

    settings = get_settings()
    domain = settings.app_domain if body.target.value == "app" else settings.auth_domain
    resp = JSONResponse(
        content=TransferTokenResponse(
            redirect_url=store.build_redirect_url(domain, body.path, token_id),
            expires_in=store.ttl,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(TOKEN_LIMIT)
@router.get("/auth/cross-domain/token", response_model=TransferValidationResponse)
async def validate_transfer_token(request: Request, auth_token: str = "") -> JSONResponse:
    """Validate and consume a transfer token; establish this origin's session."""
    token = request.app.state.transfer_tokens.validate(auth_token, consume=True)
    if token is None:
        raise NotFoundError("transfer token rejected", public_code="invalid_token")

    locked, retry_after = request.app.state.security_store.lock_status(token.subject_user_id)
    if locked:
        raise AccountLockedError(f"account {token.subject_user_id} is locked", retry_after_seconds=retry_after)

    session = request.app.state.sessions.create_session(
        token.subject_user_id,
        device_fingerprint(request.headers),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        refresh_handle=token.refresh_handle or None,
        access_handle=token.access_handle or None,
        provider_expires_at=token.expires_at,
    )
    resp = JSONResponse(
        content=TransferValidationResponse(
            user_id=token.subject_user_id,
            expires_at=session.expires_at,
            source_domain=token.source_domain,
            clean_url=strip_redirect_params(str(request.url)),
        ).model_dump()
    )
    set_session_cookie(resp, session.session_id)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.delete("/auth/cross-domain/token", response_model=CountResponse)
async def revoke_transfer_tokens(
    request: Request, current: AuthenticatedSession = Depends(get_current_session)
) -> CountResponse:
    return CountResponse(count=request.app.state.transfer_tokens.revoke_all_for_user(current.user_id))
