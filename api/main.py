"""
api/main.py -- FastAPI application entry point for CrossAuth.

Exposes the cross-domain authentication core over HTTP: sign-in, OAuth,
session lifecycle, the cross-domain token handoff and operator monitoring.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentials-enabled CORS for the two origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every store once and attaches it to app.state -- there are
no module-level store singletons. Route handlers reach them through
request.app.state. Background loops (token sweep, session sweep, event
pruning, outbox drain) are asyncio tasks started on startup and cancelled
on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from urllib.parse import urlsplit

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.crossdomain import router as crossdomain_router
from api.routes.v1.monitoring import router as monitoring_router
from auth.audit import AuditLog
from auth.provider import HttpIdentityProvider, IdentityProvider
from auth.store import SecurityStore
from core.config import Settings, get_settings
from core.errors import AccountLockedError, AuthCoreError, UpstreamError
from crossdomain.store import TransferTokenStore
from monitor.engine import SecurityMonitor
from monitor.outbox import ActionOutbox, Notifier
from sessions.manager import SessionManager

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("crossauth.api")

_settings = get_settings()

_UPSTREAM_RETRY_AFTER = 5  # seconds

# ---------------------------------------------------------------------------
# Store wiring
# ---------------------------------------------------------------------------


def build_stores(
    app: FastAPI,
    settings: Settings,
    clock: Callable[[], float] = time.time,
    identity_provider: IdentityProvider | None = None,
    security_store: SecurityStore | None = None,
    notifier: Notifier | None = None,
) -> None:
    """Construct every store and attach it to app.state.

    Order matters: the audit sink needs the security store, the token store
    needs the audit sink, the session manager needs both, and the monitor
    needs all of them. The session manager's event reporter is wired last because the
    monitor and the manager reference each other.
    """
    if security_store is None:
        if settings.audit_db_url:
            security_store = SecurityStore(db_url=settings.audit_db_url, clock=clock)
        else:
            security_store = SecurityStore(clock=clock)
    if identity_provider is None:
        identity_provider = HttpIdentityProvider(
            settings.identity_provider_url,
            api_key=settings.identity_provider_api_key,
            timeout=settings.identity_provider_timeout_seconds,
            clock=clock,
        )

    audit = AuditLog(domain=settings.auth_domain, store=security_store, clock=clock)
    outbox = ActionOutbox(notifier or Notifier(webhook_url=settings.alert_webhook_url), clock=clock)
    transfer_tokens = TransferTokenStore(
        audit, source_domain=settings.auth_domain, ttl=settings.transfer_token_ttl_seconds, clock=clock
    )
    sessions = SessionManager(
        audit,
        identity_provider,
        max_concurrent_sessions=settings.max_concurrent_sessions,
        max_age=settings.session_max_age_seconds,
        remember_me_max_age=settings.remember_me_max_age_seconds,
        refresh_threshold=settings.session_refresh_threshold_seconds,
        device_tracking_enabled=settings.device_tracking_enabled,
        transfer_tokens=transfer_tokens,
        clock=clock,
    )
    monitor = SecurityMonitor(
        audit,
        security_store,
        outbox,
        sessions=sessions,
        transfer_tokens=transfer_tokens,
        retention_days=settings.event_retention_days,
        clock=clock,
    )
    sessions.attach_event_reporter(monitor.record_event)

    app.state.clock = clock
    app.state.security_store = security_store
    app.state.identity_provider = identity_provider
    app.state.audit = audit
    app.state.outbox = outbox
    app.state.sessions = sessions
    app.state.monitor = monitor
    app.state.transfer_tokens = transfer_tokens


# ---------------------------------------------------------------------------
# Background loops
# ---------------------------------------------------------------------------


async def _periodic(name: str, interval: float, job: Callable[[], object]) -> None:
    """Run job every interval seconds until cancelled.

    The job runs in a worker thread: sweeps take store locks and the outbox
    drain may block on a webhook, neither of which belongs on the event loop.
    A failing run is logged and the loop keeps going; CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(job)
        except Exception:
            logger.exception("Background job %s failed", name)


def _start_background_tasks(app: FastAPI, settings: Settings) -> list[asyncio.Task]:
    state = app.state
    jobs = [
        ("token_sweep", settings.token_sweep_interval_seconds, state.transfer_tokens.sweep),
        ("session_sweep", settings.session_sweep_interval_seconds, state.sessions.sweep),
        ("event_prune", settings.event_prune_interval_seconds, state.monitor.prune),
        ("outbox_drain", settings.outbox_drain_interval_seconds, state.outbox.drain),
    ]
    return [asyncio.create_task(_periodic(name, interval, job), name=name) for name, interval, job in jobs]


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Stores first, background tasks last -- the tasks reference the
    stores. Shutdown drains the outbox once so queued admin alerts are not
    lost on a clean stop.
    """
    logger.info("CrossAuth API starting up (auth=%s app=%s)", _settings.auth_domain, _settings.app_domain)
    build_stores(app, _settings)
    app.state.background_tasks = _start_background_tasks(app, _settings)
    logger.info("Stores initialized; %d background task(s) running", len(app.state.background_tasks))

    yield

    for task in app.state.background_tasks:
        task.cancel()
    app.state.outbox.drain()
    app.state.outbox.notifier.close()
    app.state.identity_provider.close()
    app.state.security_store.close()
    logger.info("CrossAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CrossAuth API",
    description="Cross-domain session handoff, session lifecycle and security monitoring.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

_allowed_hosts = {"localhost", "127.0.0.1", "testserver", _settings.auth_domain, _settings.app_domain}
_allowed_hosts.update(urlsplit(origin).hostname or "" for origin in _settings.allowed_origins)
_allowed_hosts.discard("")

app.add_middleware(TrustedHostMiddleware, allowed_hosts=sorted(_allowed_hosts))

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    # The session and CSRF cookies must travel on cross-origin fetches.
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-API-Key", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. Query strings are never
# logged: the transfer token travels in one.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(crossdomain_router, prefix="/api/v1", tags=["Cross-Domain"])
app.include_router(monitoring_router, prefix="/api/v1", tags=["Monitoring"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthCoreError)
async def auth_core_error_handler(request: Request, exc: AuthCoreError) -> JSONResponse:
    """Translate the core's error taxonomy into the response envelope.

    Only exc.public_code and exc.user_message reach the client. The internal
    detail (which token, which reason) goes to the log.
    """
    logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.detail or exc.code)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.public_code, message=exc.user_message)).model_dump(),
    )
    if isinstance(exc, UpstreamError):
        response.headers["Retry-After"] = str(_UPSTREAM_RETRY_AFTER)
    elif isinstance(exc, AccountLockedError) and exc.retry_after_seconds is not None:
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Field names only -- never echo the submitted values (passwords travel in
    these bodies).
    """
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=", ".join(fields),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and component status."""
    store = getattr(request.app.state, "security_store", None)
    database = "ok" if store is not None and store.ping() else "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database})
