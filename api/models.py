"""
API request and response models for CrossAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in sessions/models.py,
crossdomain/models.py and monitor/models.py, which own the internal domain
representation. Route handlers map between the two.

Session identifiers and transfer token ids never appear whole in a response
body except where the caller needs them (the redirect URL). Listings show a
12-character prefix.

Separation of concerns: package models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditRecord
from monitor.models import SecurityAnalysis, SecurityEvent
from sessions.models import Session

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: the Identity Provider is the authority on address
# validity. This only rejects obvious garbage before a network call.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_ID_PREFIX = 12


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MonitoringViewEnum(str, Enum):
    health = "health"
    metrics = "metrics"
    events = "events"


class TargetOriginEnum(str, Enum):
    app = "app"
    auth = "auth"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in."""

    email: str = Field(pattern=EMAIL_PATTERN, max_length=320)
    # Passwords are passed through byte for byte; only the email is normalized.
    password: str = Field(min_length=1, max_length=1024)
    remember_me: bool = False

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        """Strip and lowercase so failed-login tracking keys one account, not one spelling."""
        if isinstance(value, str):
            return value.strip().lower()
        return value


class TransferTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/cross-domain/token.

    csrf_token must equal the csrf_token cookie issued by GET .../csrf.
    """

    csrf_token: str = Field(min_length=1, max_length=128)
    target: TargetOriginEnum = TargetOriginEnum.app
    path: str = Field(default="/auth/callback", max_length=512)

    @field_validator("path")
    @classmethod
    def local_path(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//") or "\\" in value:
            raise ValueError("path must be a server-local path")
        return value


# ---------------------------------------------------------------------------
# Response models -- errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}


# ---------------------------------------------------------------------------
# Response models -- sessions
# ---------------------------------------------------------------------------


class SignInResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    expires_at: float
    mfa_required: bool = False


class SessionResponse(BaseModel):
    """Response for GET /api/v1/auth/session."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    expires_at: float
    needs_refresh: bool
    refresh_count: int


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    expires_at: float


class SessionInfo(BaseModel):
    """One row in GET /api/v1/auth/sessions."""

    model_config = ConfigDict(frozen=True)

    session_id_prefix: str
    current: bool
    created_at: float
    last_activity_at: float
    expires_at: float
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    refresh_count: int
    remember_me: bool

    @classmethod
    def from_session(cls, session: Session, current_session_id: str) -> "SessionInfo":
        return cls(
            session_id_prefix=session.session_id[:_ID_PREFIX],
            current=session.session_id == current_session_id,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            refresh_count=session.refresh_count,
            remember_me=session.remember_me,
        )


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionInfo]
    max_concurrent_sessions: int


class CountResponse(BaseModel):
    """Generic "how many were affected" response for bulk deletes."""

    model_config = ConfigDict(frozen=True)

    count: int


# ---------------------------------------------------------------------------
# Response models -- cross-domain
# ---------------------------------------------------------------------------


class CsrfResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    csrf_token: str
    expires_in: int


class TransferTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    redirect_url: str
    expires_in: int


class TransferValidationResponse(BaseModel):
    """Response for GET /api/v1/auth/cross-domain/token.

    clean_url is the request URL with auth_token and timestamp removed -- what
    the app origin should replace the address bar with.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    expires_at: float
    source_domain: str
    clean_url: str


# ---------------------------------------------------------------------------
# Response models -- monitoring (operator only)
# ---------------------------------------------------------------------------


class AuditEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    user_id: Optional[str] = None
    domain: str
    timestamp: float
    success: bool
    metadata: dict[str, Any]

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditEventRow":
        return cls(
            type=record.type,
            user_id=record.user_id,
            domain=record.domain,
            timestamp=record.timestamp,
            success=record.success,
            metadata=record.metadata,
        )


class SecurityEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    event_type: str
    severity: str
    timestamp: float
    ip_address: Optional[str] = None
    response_actions: list[str]
    resolved: bool
    metadata: dict[str, Any]

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventRow":
        return cls(
            id=event.id,
            user_id=event.user_id,
            event_type=event.event_type,
            severity=event.severity,
            timestamp=event.timestamp,
            ip_address=event.ip_address,
            response_actions=list(event.response_actions),
            resolved=event.resolved,
            metadata=event.metadata,
        )


class MonitoringResponse(BaseModel):
    """Response for GET /api/v1/auth/monitoring. Exactly one view is populated."""

    model_config = ConfigDict(frozen=True)

    view: MonitoringViewEnum
    timestamp: float
    health: Optional[dict[str, Any]] = None
    metrics: Optional[dict[str, Any]] = None
    events: Optional[list[AuditEventRow]] = None
    security_events: Optional[list[SecurityEventRow]] = None


class UserSecurityResponse(BaseModel):
    """Response for GET /api/v1/auth/monitoring/users/{user_id}."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    risk_level: str
    recommendations: list[str]
    events: list[SecurityEventRow]
    last_incident: Optional[SecurityEventRow] = None
    is_locked: bool
    locked_until: Optional[float] = None
    mfa_required: bool
    active_sessions: int

    @classmethod
    def from_analysis(cls, analysis: SecurityAnalysis, account, active_sessions: int) -> "UserSecurityResponse":
        return cls(
            user_id=analysis.user_id,
            risk_level=analysis.risk_level,
            recommendations=analysis.recommendations,
            events=[SecurityEventRow.from_event(e) for e in analysis.events],
            last_incident=SecurityEventRow.from_event(analysis.last_incident) if analysis.last_incident else None,
            is_locked=account.is_locked,
            locked_until=account.locked_until,
            mfa_required=account.mfa_required,
            active_sessions=active_sessions,
        )
