"""
api/routes/v1/monitoring.py -- Operator-only security monitoring endpoints.

Routes:
  GET  /api/v1/auth/monitoring?type=health|metrics|events  -- sink and store overview
  GET  /api/v1/auth/monitoring/users/{user_id}             -- analyze_user_security + account state
  POST /api/v1/auth/monitoring/users/{user_id}/unlock      -- lift a lock (the only way out of a permanent one)

Every route requires X-API-Key == OPERATOR_API_KEY (require_operator). With
OPERATOR_API_KEY unset the endpoints answer 403 to everyone.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AuditEventRow,
    MonitoringResponse,
    MonitoringViewEnum,
    SecurityEventRow,
    UserSecurityResponse,
)
from auth.dependencies import require_operator

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/auth/monitoring", response_model=MonitoringResponse)
async def monitoring(
    request: Request,
    type: MonitoringViewEnum = MonitoringViewEnum.health,
    limit: int = Query(default=100, ge=1, le=1000),
    event_type: Optional[str] = None,
    user_id: Optional[str] = None,
    domain: Optional[str] = None,
    severity: Optional[str] = None,
) -> MonitoringResponse:
    state = request.app.state
    now = state.clock()

    if type == MonitoringViewEnum.health:
        health = state.audit.health_status()
        health["outbox_pending"] = state.outbox.pending()
        health["active_sessions"] = len(state.sessions)
        health["active_transfer_tokens"] = len(state.transfer_tokens)
        return MonitoringResponse(view=type, timestamp=now, health=health)

    if type == MonitoringViewEnum.metrics:
        metrics = {
            "audit": state.audit.metrics(),
            "sessions": state.sessions.stats(),
            "transfer_tokens": state.transfer_tokens.stats(),
            "security": state.monitor.stats(),
        }
        return MonitoringResponse(view=type, timestamp=now, metrics=metrics)

    records = state.audit.get_events(type=event_type, user_id=user_id, domain=domain, limit=limit)
    security_events = state.monitor.recent_events(limit=limit, severity=severity)
    return MonitoringResponse(
        view=type,
        timestamp=now,
        events=[AuditEventRow.from_record(r) for r in records],
        security_events=[SecurityEventRow.from_event(e) for e in security_events],
    )


@router.get("/auth/monitoring/users/{user_id}", response_model=UserSecurityResponse)
async def user_security(request: Request, user_id: str) -> UserSecurityResponse:
    state = request.app.state
    return UserSecurityResponse.from_analysis(
        state.monitor.analyze_user_security(user_id),
        state.security_store.get_account(user_id),
        active_sessions=len(state.sessions.get_user_sessions(user_id)),
    )


@router.post("/auth/monitoring/users/{user_id}/unlock")
async def unlock_user(request: Request, user_id: str) -> dict:
    state = request.app.state
    lifted = state.security_store.unlock_account(user_id)
    state.audit.emit("account_unlocked", user_id=user_id, metadata={"by": "operator", "was_locked": lifted})
    return {"user_id": user_id, "unlocked": lifted}
