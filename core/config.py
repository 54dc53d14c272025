"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CrossAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, cookie_domain -> COOKIE_DOMAIN).

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and sanity-checks the time
      windows the stores depend on.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. OAuth state
       signing and operator-key hashing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key in production would invalidate every
       in-flight OAuth state on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
crossdomain/, sessions/, or monitor/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("crossauth.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Origins and cookies
    # ------------------------------------------------------------------

    auth_domain: str = "auth.example.com"
    app_domain: str = "app.example.com"
    # Leading dot: the cookie is shared by every subdomain of the parent.
    cookie_domain: str = ".example.com"
    allowed_origins: list[str] = ["https://auth.example.com", "https://app.example.com"]
    secure_cookies: bool = True
    session_cookie_name: str = "session_id"
    csrf_token_max_age_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Cross-domain transfer tokens
    # ------------------------------------------------------------------

    transfer_token_ttl_seconds: int = 5 * 60
    token_sweep_interval_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_max_age_seconds: int = 24 * 60 * 60
    remember_me_max_age_seconds: int = 30 * 24 * 60 * 60
    session_refresh_threshold_seconds: int = 10 * 60
    max_concurrent_sessions: int = 3
    device_tracking_enabled: bool = True
    session_sweep_interval_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    oauth_state_max_age_seconds: int = 15 * 60
    oauth_providers: list[str] = ["google", "apple", "github"]

    # ------------------------------------------------------------------
    # Security monitor
    # ------------------------------------------------------------------

    event_retention_days: int = 30
    event_prune_interval_seconds: int = 60 * 60
    outbox_drain_interval_seconds: float = 2.0
    # Empty string disables webhook delivery; alerts are still logged.
    alert_webhook_url: str = ""

    # ------------------------------------------------------------------
    # Identity provider (GoTrue-compatible REST API)
    # ------------------------------------------------------------------

    identity_provider_url: str = "http://localhost:9999"
    identity_provider_api_key: str = ""
    identity_provider_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Operators and persistence
    # ------------------------------------------------------------------

    # Empty string disables the operator monitoring endpoints entirely.
    operator_api_key: str = ""
    audit_db_url: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    sign_in_rate_limit: str = "10/minute"
    token_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued OAuth states will not survive restart -- acceptable for
            local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "OAuth state will not validate across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_windows(self) -> "Settings":
        """Reject time windows that would make the stores misbehave.

        A refresh threshold at or above the session lifetime would flag every
        fresh session for refresh; a zero concurrency cap would evict the
        session being created.
        """
        if self.max_concurrent_sessions < 1:
            raise ValueError("MAX_CONCURRENT_SESSIONS must be at least 1.")
        if self.transfer_token_ttl_seconds <= 0:
            raise ValueError("TRANSFER_TOKEN_TTL_SECONDS must be positive.")
        if self.session_refresh_threshold_seconds >= self.session_max_age_seconds:
            raise ValueError("SESSION_REFRESH_THRESHOLD_SECONDS must be shorter than SESSION_MAX_AGE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
