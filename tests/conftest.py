"""
tests/conftest.py -- Shared test fixtures for CrossAuth unit and integration tests.

This module provides:
  - FakeClock: injectable time source; tests advance it instead of sleeping
  - FakeIdentityProvider: in-process IdP with scripted users, codes and failures
  - clock / security_store / audit / provider / outbox / sessions / monitor:
    function-scoped, fully wired unit-test stores
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: (client, provider, clock) for API integration tests
  - use_session(): point the TestClient's cookie jar at one session id

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests are single-threaded and use plain :memory:.

Environment must be set before any api/auth/core import:
  DEBUG=true        get_settings() auto-generates SECRET_KEY instead of raising
  COOKIE_DOMAIN=""  host-only cookies, so the jar sends them back to testserver
  SECURE_COOKIES    false, TestClient talks plain http
  rate limits       high enough that no test trips them by accident
"""

from __future__ import annotations

import asyncio
import os
import secrets
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import urlencode

# CRITICAL: Set env before any auth/core import -- settings are read once.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("COOKIE_DOMAIN", "")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")
os.environ.setdefault("SIGN_IN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("TOKEN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_stores
from auth.audit import AuditLog
from auth.models import ProviderSession, ProviderUser
from auth.store import SecurityStore
from core.config import get_settings
from core.errors import InvalidCredentialsError
from monitor.engine import SecurityMonitor
from monitor.outbox import ActionOutbox, Notifier
from sessions.manager import SessionManager

OPERATOR_HEADERS = {"X-API-Key": "test-operator-key"}
AUTH_ORIGIN = {"Origin": "https://auth.example.com"}

_EPOCH = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable time source. clock() -> now; clock.advance(seconds) moves it."""

    def __init__(self, start: float = _EPOCH) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeIdentityProvider:
    """In-process stand-in for the GoTrue-compatible Identity Provider.

    users:          email -> (password, ProviderUser)
    codes:          OAuth authorization code -> ProviderUser
    refresh_error:  when set, refresh_provider_session raises it
    """

    def __init__(self, clock: FakeClock, session_lifetime: float = 3600) -> None:
        self.clock = clock
        self.session_lifetime = session_lifetime
        self.users: dict[str, tuple[str, ProviderUser]] = {}
        self.codes: dict[str, ProviderUser] = {}
        self.refresh_error: Exception | None = None
        self.refresh_calls: list[str] = []
        self.exchanged: list[tuple[str, str]] = []

    def add_user(self, email: str, password: str, user_id: str, email_verified: bool = True) -> ProviderUser:
        user = ProviderUser(id=user_id, email=email, email_verified=email_verified)
        self.users[email] = (password, user)
        return user

    def _session(self, user: ProviderUser) -> ProviderSession:
        return ProviderSession(
            access_token=f"access-{secrets.token_hex(8)}",
            refresh_token=f"refresh-{secrets.token_hex(8)}",
            expires_at=self.clock() + self.session_lifetime,
            user=user,
        )

    def sign_in_with_password(self, email: str, password: str) -> ProviderSession:
        entry = self.users.get(email)
        if entry is None or entry[0] != password:
            raise InvalidCredentialsError("Invalid login credentials")
        return self._session(entry[1])

    def exchange_oauth_code(self, code: str, code_verifier: str) -> ProviderSession:
        user = self.codes.get(code)
        if user is None:
            raise InvalidCredentialsError("invalid authorization code")
        self.exchanged.append((code, code_verifier))
        return self._session(user)

    def refresh_provider_session(self, refresh_token: str) -> ProviderSession:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._session(ProviderUser(id="refreshed", email_verified=True))

    def get_user(self, access_token: str) -> ProviderUser:
        raise InvalidCredentialsError("not used by the fake")

    def authorize_url(self, provider: str, redirect_to: str, code_challenge: str, state: str) -> str:
        query = urlencode(
            {
                "provider": provider,
                "redirect_to": redirect_to,
                "code_challenge": code_challenge,
                "code_challenge_method": "s256",
                "state": state,
            }
        )
        return f"https://idp.test/authorize?{query}"

    def close(self) -> None:
        pass


class RecordingNotifier(Notifier):
    """Notifier that keeps every delivered message; fail_times makes deliver raise."""

    def __init__(self, fail_times: int = 0) -> None:
        super().__init__()
        self.delivered: list = []
        self.fail_times = fail_times

    def deliver(self, message) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("webhook unreachable")
        super().deliver(message)
        self.delivered.append(message)


# ---------------------------------------------------------------------------
# Unit-test fixtures -- fresh, fully wired stores per test
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def security_store(clock: FakeClock) -> Generator[SecurityStore, None, None]:
    store = SecurityStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def audit(clock: FakeClock, security_store: SecurityStore) -> AuditLog:
    return AuditLog(domain="auth.example.com", store=security_store, clock=clock)


@pytest.fixture
def provider(clock: FakeClock) -> FakeIdentityProvider:
    return FakeIdentityProvider(clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def outbox(clock: FakeClock, notifier: RecordingNotifier) -> ActionOutbox:
    return ActionOutbox(notifier, clock=clock)


@pytest.fixture
def sessions(audit: AuditLog, provider: FakeIdentityProvider, clock: FakeClock) -> SessionManager:
    return SessionManager(audit, provider, clock=clock)


@pytest.fixture
def monitor(
    audit: AuditLog,
    security_store: SecurityStore,
    outbox: ActionOutbox,
    sessions: SessionManager,
    clock: FakeClock,
) -> SecurityMonitor:
    """SecurityMonitor wired to the session manager both ways, as the lifespan does."""
    mon = SecurityMonitor(audit, security_store, outbox, sessions=sessions, clock=clock)
    sessions.attach_event_reporter(mon.record_event)
    return mon


# ---------------------------------------------------------------------------
# Integration-test helpers
# ---------------------------------------------------------------------------


def _patch_lifespan(provider: FakeIdentityProvider, clock: FakeClock, db_url: str, notifier: Notifier):
    """Return an async context manager that replaces the real lifespan.

    Builds the real store graph through build_stores() with the fake IdP,
    the fake clock and a named in-memory DB. No sweep/drain loops run; tests
    call sweep()/drain() themselves when they need them. The placeholder task
    keeps shutdown symmetric with the real lifespan.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        store = SecurityStore(db_url=db_url, clock=clock)
        build_stores(
            app,
            get_settings(),
            clock=clock,
            identity_provider=provider,
            security_store=store,
            notifier=notifier,
        )
        app.state.background_tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.background_tasks:
            task.cancel()
        store.close()

    return test_lifespan


def use_session(client: TestClient, session_id: str | None) -> None:
    """Replace whatever the cookie jar holds with exactly this session cookie."""
    client.cookies.clear()
    if session_id:
        client.cookies.set(get_settings().session_cookie_name, session_id)


def sign_in(client: TestClient, email: str, password: str, **extra) -> str:
    """POST /auth/sign-in and return the new session id. Leaves the jar holding only it."""
    client.cookies.clear()
    resp = client.post("/api/v1/auth/sign-in", json={"email": email, "password": password, **extra})
    assert resp.status_code == 200, resp.text
    session_id = resp.cookies.get(get_settings().session_cookie_name)
    assert session_id
    use_session(client, session_id)
    return session_id


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, FakeIdentityProvider, FakeClock], None, None]:
    """Yield (client, provider, clock) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, middleware and exception handlers but use an
    isolated in-memory store, a scripted IdP and a controllable clock. Each
    test module gets its own DB name so modules never share state.
    """
    clock = FakeClock()
    provider = FakeIdentityProvider(clock)
    provider.add_user("alice@example.com", "correct-horse", "user-alice")
    provider.add_user("bob@example.com", "battery-staple", "user-bob")
    provider.add_user("unverified@example.com", "pw-unverified", "user-unverified", email_verified=False)

    suffix = request.module.__name__.rsplit(".", 1)[-1]
    db_url = f"sqlite:///file:test_security_{suffix}?mode=memory&cache=shared&uri=true"
    app.router.lifespan_context = _patch_lifespan(provider, clock, db_url, RecordingNotifier())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, provider, clock


@pytest.fixture
def browser(api_client):
    """Session-cookie helpers bound to the module's TestClient.

    browser.sign_in(email, password) -> session id (jar holds only it)
    browser.use(session_id)          -> switch the jar to another session
    browser.use(None)                -> anonymous
    """
    client = api_client[0]

    class _Browser:
        operator_headers = OPERATOR_HEADERS
        auth_origin = AUTH_ORIGIN

        @staticmethod
        def sign_in(email: str, password: str, **extra) -> str:
            return sign_in(client, email, password, **extra)

        @staticmethod
        def use(session_id: str | None) -> None:
            use_session(client, session_id)

    client.cookies.clear()
    return _Browser()
