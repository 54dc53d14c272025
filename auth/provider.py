"""
auth/provider.py -- Identity Provider client (GoTrue-compatible REST API).

The Identity Provider owns credentials, password hashing and OAuth token
issuance. This module is the narrow interface the core talks to:

  sign_in_with_password(email, password)       -> ProviderSession
  exchange_oauth_code(code, code_verifier)     -> ProviderSession
  refresh_provider_session(refresh_token)      -> ProviderSession
  get_user(access_token)                       -> ProviderUser
  authorize_url(provider, redirect_to, code_challenge, state) -> str

IdentityProvider is a typing.Protocol so tests (and alternative providers)
can stand in without subclassing.

Error translation (HTTP boundary of the provider, not of this service):
  timeout / connection error / 5xx      -> UpstreamError (retryable)
  "email not confirmed"                 -> EmailNotVerifiedError
  any other 4xx                         -> InvalidCredentialsError
  malformed JSON payload                -> UpstreamError

Raw provider messages are logged at WARNING and never copied into the
exception's user_message.

Layer rule: no imports from api/, crossdomain/, sessions/, or monitor/.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import requests
from authlib.common.urls import add_params_to_uri

from auth.models import ProviderSession, ProviderUser
from core.errors import EmailNotVerifiedError, InvalidCredentialsError, UpstreamError

logger = logging.getLogger("crossauth.auth.provider")


class IdentityProvider(Protocol):
    def sign_in_with_password(self, email: str, password: str) -> ProviderSession: ...

    def exchange_oauth_code(self, code: str, code_verifier: str) -> ProviderSession: ...

    def refresh_provider_session(self, refresh_token: str) -> ProviderSession: ...

    def get_user(self, access_token: str) -> ProviderUser: ...

    def authorize_url(self, provider: str, redirect_to: str, code_challenge: str, state: str) -> str: ...


class HttpIdentityProvider:
    """requests-based client for a GoTrue-style auth server.

    One requests.Session per client for connection pooling. max_redirects is
    pinned low: the provider is a known endpoint and never needs a redirect
    chain to answer a token request.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 5.0, clock=time.time) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._clock = clock
        self._session = requests.Session()
        self._session.max_redirects = 3
        if api_key:
            self._session.headers["apikey"] = api_key
        self._session.headers["Accept"] = "application/json"

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def sign_in_with_password(self, email: str, password: str) -> ProviderSession:
        payload = self._request("POST", "/token", params={"grant_type": "password"}, json={"email": email, "password": password})
        return self._to_session(payload)

    def exchange_oauth_code(self, code: str, code_verifier: str) -> ProviderSession:
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "pkce"},
            json={"auth_code": code, "code_verifier": code_verifier},
        )
        return self._to_session(payload)

    def refresh_provider_session(self, refresh_token: str) -> ProviderSession:
        payload = self._request("POST", "/token", params={"grant_type": "refresh_token"}, json={"refresh_token": refresh_token})
        return self._to_session(payload)

    def get_user(self, access_token: str) -> ProviderUser:
        payload = self._request("GET", "/user", headers={"Authorization": f"Bearer {access_token}"})
        return _to_user(payload)

    def authorize_url(self, provider: str, redirect_to: str, code_challenge: str, state: str) -> str:
        return add_params_to_uri(
            f"{self.base_url}/authorize",
            [
                ("provider", provider),
                ("redirect_to", redirect_to),
                ("code_challenge", code_challenge),
                ("code_challenge_method", "s256"),
                ("state", state),
            ],
        )

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            logger.warning("Identity provider timeout on %s %s: %s", method, path, e)
            raise UpstreamError(f"timeout calling {path}") from e
        except requests.RequestException as e:
            logger.warning("Identity provider unreachable on %s %s: %s", method, path, e)
            raise UpstreamError(f"connection error calling {path}") from e

        if resp.status_code >= 500:
            logger.warning("Identity provider %s on %s %s", resp.status_code, method, path)
            raise UpstreamError(f"provider returned {resp.status_code}")

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.warning("Identity provider rejected %s %s (%s): %s", method, path, resp.status_code, message)
            if "not confirmed" in message.lower() or "not verified" in message.lower():
                raise EmailNotVerifiedError(message)
            raise InvalidCredentialsError(message)

        try:
            payload = resp.json()
        except ValueError as e:
            logger.warning("Identity provider returned non-JSON body on %s %s", method, path)
            raise UpstreamError("malformed provider response") from e
        if not isinstance(payload, dict):
            raise UpstreamError("malformed provider response")
        return payload

    def _to_session(self, payload: dict[str, Any]) -> ProviderSession:
        try:
            expires_at = payload.get("expires_at")
            if expires_at is None:
                expires_at = self._clock() + float(payload.get("expires_in", 3600))
            return ProviderSession(
                access_token=str(payload["access_token"]),
                refresh_token=str(payload["refresh_token"]),
                expires_at=float(expires_at),
                user=_to_user(payload.get("user") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Identity provider session payload missing fields: %s", e)
            raise UpstreamError("malformed provider session") from e


def _to_user(payload: dict[str, Any]) -> ProviderUser:
    if not payload.get("id"):
        raise UpstreamError("provider user has no id")
    return ProviderUser(
        id=str(payload["id"]),
        email=payload.get("email"),
        email_verified=bool(payload.get("email_confirmed_at") or payload.get("confirmed_at")),
        metadata=dict(payload.get("user_metadata") or {}),
    )


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("msg") or body.get("message") or body.get("error") or "")
    return ""
