"""
crossdomain/store.py -- In-memory transfer token store for the cross-origin hop.

Flow:
  auth origin:  issue(provider_session) -> token_id
                build_redirect_url(app_domain, "/auth/callback", token_id)
  browser:      follows https://app.example.com/auth/callback?auth_token=...&timestamp=...
  app origin:   validate(token_id, consume=True) -> TransferToken | None
                strip_redirect_params(url) before rendering

A token is valid iff now <= issued_at + ttl AND now <= expires_at (the
provider session expiry copied at issuance). Every other lookup returns None;
the caller cannot tell "never existed" from "expired", and neither can the
browser.

Single use is explicit: validate(consume=True) removes the entry inside the
same critical section as the read, so two concurrent validations of one token
cannot both succeed. consume=False leaves the token in place until TTL; the
HTTP route always consumes.

Thread safety: one RLock guards the whole dict. sweep() takes the same lock,
so a sweep never interleaves with issue/validate.

Layer rule: no imports from api/, sessions/, or monitor/.
"""

from __future__ import annotations

import logging
import threading
import time
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from auth.audit import AuditLog
from auth.models import ProviderSession
from auth.tokens import generate_transfer_token_id
from crossdomain.models import TransferToken

logger = logging.getLogger("crossauth.crossdomain")

_DEFAULT_TTL = 5 * 60  # seconds

REDIRECT_PARAMS = ("auth_token", "timestamp")


class TransferTokenStore:
    """Issue, validate and revoke transfer tokens.

    Usage:
        store = TransferTokenStore(audit, source_domain="auth.example.com")
        token_id = store.issue(provider_session, session_id="sess_...")
        token = store.validate(token_id, consume=True)   # TransferToken or None
        store.sweep()                                    # call periodically
    """

    def __init__(
        self,
        audit: AuditLog,
        source_domain: str,
        ttl: int = _DEFAULT_TTL,
        clock=time.time,
    ) -> None:
        self.ttl = ttl
        self.source_domain = source_domain
        self._audit = audit
        self._clock = clock
        self._lock = threading.RLock()
        self._tokens: dict[str, TransferToken] = {}

    # ------------------------------------------------------------------
    # Issue / validate
    # ------------------------------------------------------------------

    def issue(self, session: ProviderSession, session_id: str | None = None) -> str:
        """Mint a transfer token bound to a provider session. Returns its id."""
        token_id = generate_transfer_token_id()
        token = TransferToken(
            id=token_id,
            access_handle=session.access_token,
            refresh_handle=session.refresh_token,
            issued_at=self._clock(),
            expires_at=session.expires_at,
            source_domain=self.source_domain,
            subject_user_id=session.user.id,
            session_id=session_id,
        )
        with self._lock:
            self._tokens[token_id] = token

        # Only a prefix of the id is ever logged.
        self._audit.emit(
            "token_generation",
            user_id=token.subject_user_id,
            metadata={"token_id": token_id[:8], "expires_at": token.expires_at, "session_id": _short(session_id)},
        )
        return token_id

    def validate(self, token_id: str, consume: bool = False) -> TransferToken | None:
        """Return the token if still valid, else None.

        Failure reasons (audited, never returned): not_found, ttl_expired,
        session_expired. Expired entries are removed on detection.
        """
        now = self._clock()
        reason = None
        with self._lock:
            token = self._tokens.get(token_id) if token_id else None
            if token is None:
                reason = "not_found"
            elif now > token.issued_at + self.ttl:
                reason = "ttl_expired"
                del self._tokens[token_id]
            elif now > token.expires_at:
                reason = "session_expired"
                del self._tokens[token_id]
            elif consume:
                del self._tokens[token_id]

        if reason is not None:
            self._audit.emit(
                "token_validation",
                user_id=token.subject_user_id if token else None,
                metadata={"token_id": (token_id or "")[:8], "reason": reason},
                success=False,
            )
            logger.info("Transfer token rejected: %s", reason)
            return None

        self._audit.emit(
            "token_validation",
            user_id=token.subject_user_id,
            metadata={"token_id": token_id[:8], "consumed": consume, "session_id": _short(token.session_id)},
        )
        return token

    # ------------------------------------------------------------------
    # Revocation and cleanup
    # ------------------------------------------------------------------

    def revoke_all_for_user(self, user_id: str) -> int:
        """Remove every token whose subject is user_id. Used on sign-out."""
        with self._lock:
            doomed = [tid for tid, t in self._tokens.items() if t.subject_user_id == user_id]
            for tid in doomed:
                del self._tokens[tid]
        if doomed:
            self._audit.emit("token_revocation", user_id=user_id, metadata={"count": len(doomed)})
        return len(doomed)

    def sweep(self) -> int:
        """Delete every token past its TTL or its provider session expiry."""
        now = self._clock()
        with self._lock:
            doomed = [tid for tid, t in self._tokens.items() if now > t.issued_at + self.ttl or now > t.expires_at]
            for tid in doomed:
                del self._tokens[tid]
        if doomed:
            logger.info("Transfer token sweep removed %d expired token(s)", len(doomed))
        return len(doomed)

    def stats(self) -> dict:
        with self._lock:
            active = len(self._tokens)
        return {"active_tokens": active, "ttl_seconds": self.ttl}

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    # ------------------------------------------------------------------
    # Redirect protocol
    # ------------------------------------------------------------------

    def build_redirect_url(self, target_domain: str, path: str, token_id: str, now: float | None = None) -> str:
        """https://{target_domain}{path}?auth_token=<id>&timestamp=<epoch millis>"""
        current = self._clock() if now is None else now
        if not path.startswith("/"):
            path = "/" + path
        query = urlencode({"auth_token": token_id, "timestamp": int(current * 1000)})
        return f"https://{target_domain}{path}?{query}"


def strip_redirect_params(url: str) -> str:
    """Remove auth_token and timestamp from a URL, keeping every other param."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in REDIRECT_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def _short(value: str | None) -> str | None:
    return value[:12] if value else None
