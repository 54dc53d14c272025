"""
core/errors.py -- Error taxonomy shared by every store and the HTTP layer.

Four kinds, and only four, cross the boundary to callers:

  NotFoundError      token or session absent
  ExpiredError       TTL or provider-session expiry (cleanup already done)
  ValidationFailure  state / fingerprint / CSRF mismatch (always audited)
  UpstreamError      Identity Provider failed or timed out (retryable)

InvalidCredentialsError is the not-found of the credential path: the provider
said no, and the caller gets the same generic message.

The HTTP layer maps NotFoundError and ExpiredError to the same response so an
external caller cannot tell "never existed" from "expired". Every error carries
a user_message that is safe to render; the internal detail stays in `str(exc)`
and only ever reaches the logs.

Layer rule: core/ is the kernel -- no imports from other project packages.
"""

from __future__ import annotations

GENERIC_USER_MESSAGE = "Authentication failed, please try again."


class AuthCoreError(Exception):
    """Base class for every error the core raises toward its callers."""

    code: str = "auth_failed"
    # What the HTTP layer puts in the response envelope. Defaults to code;
    # not-found and expired share one so existence never leaks.
    public_code: str = ""
    status_code: int = 401

    def __init__(
        self,
        detail: str = "",
        user_message: str = GENERIC_USER_MESSAGE,
        public_code: str | None = None,
    ) -> None:
        super().__init__(detail or self.code)
        self.detail = detail
        self.user_message = user_message
        if public_code:
            self.public_code = public_code
        elif not self.public_code:
            self.public_code = self.code


class NotFoundError(AuthCoreError):
    code = "not_found"
    public_code = "invalid_session"


class ExpiredError(AuthCoreError):
    code = "expired"
    public_code = "invalid_session"


class InvalidCredentialsError(AuthCoreError):
    """The Identity Provider rejected the credentials or the grant."""

    code = "invalid_credentials"


class ValidationFailure(AuthCoreError):
    code = "validation_failed"
    public_code = "forbidden"
    status_code = 403


class AccountLockedError(ValidationFailure):
    """Raised when a locked account attempts to authenticate.

    One of the few cases where the user is told what happened, because they
    need to know how long to wait.
    """

    code = "account_locked"
    public_code = "account_locked"
    status_code = 423

    def __init__(self, detail: str = "", retry_after_seconds: int | None = None) -> None:
        if retry_after_seconds is None:
            message = "This account is locked. Please contact support."
        else:
            minutes = max(1, -(-retry_after_seconds // 60))
            message = f"Too many attempts, retry after {minutes} minutes."
        super().__init__(detail, user_message=message)
        self.retry_after_seconds = retry_after_seconds


class EmailNotVerifiedError(ValidationFailure):
    code = "email_not_verified"
    public_code = "email_not_verified"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail, user_message="Please verify your email address before signing in.")


class UpstreamError(AuthCoreError):
    """The Identity Provider call failed. Callers may retry."""

    code = "upstream_unavailable"
    status_code = 503
    retryable = True
