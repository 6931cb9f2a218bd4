"""Session lifecycle APIs: start, inspect, cancel and stream automation runs."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agent_broker.api.deps import get_current_user, get_services, require_enabled
from agent_broker.container import BrokerContainer, BrokerServices
from agent_broker.core.errors import InvalidRequestError, UnsupportedDomainError
from agent_broker.core.logging import log_session_event
from agent_broker.core.models import AutomationPlan, Session
from agent_broker.core.policy import parse_url

router = APIRouter(tags=["agent"], dependencies=[Depends(require_enabled)])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class DeviceInfo(BaseModel):
    id: Optional[str] = None
    os: str = Field(default="unknown")
    name: str = Field(default="unknown")


class StartRequest(BaseModel):
    domain: str = Field(..., min_length=1)
    actions: List[str] = Field(..., min_length=1)
    requested_url: str = Field(..., min_length=1, alias="requestedUrl")
    device: Optional[DeviceInfo] = None
    plan: Optional[AutomationPlan] = None

    model_config = ConfigDict(populate_by_name=True)


class TokenStartRequest(BaseModel):
    token: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    actions: List[str] = Field(..., min_length=1)
    plan: Optional[AutomationPlan] = None


class CancelRequest(BaseModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


def _session_brief(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "consentState": session.consent.value,
        "domain": session.domain,
        "actions": [action.value for action in session.actions],
    }


@router.post("/start")
async def start_session(
    request: StartRequest,
    user_id: str = Depends(get_current_user),
    container: BrokerContainer = Depends(require_enabled),
    services: BrokerServices = Depends(get_services),
):
    """Mint a capability token for the caller and open a pending session with it."""
    domain = request.domain.strip().lower()
    if not services.policy.is_domain_allowed(domain):
        raise UnsupportedDomainError(domain)
    _, host = parse_url(request.requested_url)
    if host != domain:
        raise InvalidRequestError(f"requestedUrl host '{host}' does not match domain", field="requestedUrl")

    minted = container.tokens.mint(user_id, domain, request.actions)
    session = await services.sessions.create(
        minted.claims,
        request.requested_url,
        request.actions,
        plan=request.plan,
    )
    if request.device:
        log_session_event("device", session.id, device_os=request.device.os, device_name=request.device.name)

    return {
        "token": minted.token,
        "expiresAt": minted.expires_at.isoformat(),
        "session": _session_brief(session),
    }


@router.post("/session/start")
async def start_session_with_token(
    request: TokenStartRequest,
    container: BrokerContainer = Depends(require_enabled),
    services: BrokerServices = Depends(get_services),
):
    """Open a session for a token minted elsewhere; the token's subject owns it."""
    claims = container.tokens.verify(request.token)
    session = await services.sessions.create(claims, request.url, request.actions, plan=request.plan)
    return {
        "expiresAt": datetime.fromtimestamp(claims.exp, tz=timezone.utc).isoformat(),
        "session": _session_brief(session),
    }


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    user_id: str = Depends(get_current_user),
    services: BrokerServices = Depends(get_services),
):
    session = services.sessions.get(session_id, user_id)
    summary = session.summary()
    summary["finished"] = session.finished
    summary["remainingActions"] = services.sessions.rate_limiter.remaining(session.rate_window)
    return summary


@router.get("/sessions/{session_id}/page")
async def get_page_state(
    session_id: str,
    user_id: str = Depends(get_current_user),
    services: BrokerServices = Depends(get_services),
):
    """Live URL and title of the page a running session is driving; 409 when no run is active."""
    session = services.sessions.get(session_id, user_id)
    state = await services.executor.page_state(session)
    return {"sessionId": session.id, **state.to_dict()}


@router.post("/cancel")
async def cancel_session(
    request: CancelRequest,
    user_id: str = Depends(get_current_user),
    services: BrokerServices = Depends(get_services),
):
    session = services.sessions.get(request.session_id, user_id)
    state = await services.sessions.cancel(session.id, reason="cancelled_by_user")
    return {"sessionId": session.id, "consentState": state.value if state else session.consent.value}


@router.get("/events/{session_id}")
async def stream_events(
    session_id: str,
    wait: Optional[float] = Query(None, ge=0, le=300),
    user_id: str = Depends(get_current_user),
    services: BrokerServices = Depends(get_services),
):
    """
    Server-sent events for one consented session.

    `wait` holds a still-pending session open for up to that many seconds
    while the user decides.
    """
    frames = await services.gateway.open(session_id, user_id, wait=wait)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)
