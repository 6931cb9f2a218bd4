"""
Local consent UI channel.

These routes are meant for the desktop consent surface on the same machine
(the broker binds to loopback). They deliberately take no caller identity:
the remote caller that owns a session must never be able to approve it.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agent_broker.api.agent import SSE_HEADERS
from agent_broker.api.deps import get_services, require_enabled
from agent_broker.container import BrokerServices
from agent_broker.core.errors import SessionNotFoundError

router = APIRouter(prefix="/consent", tags=["consent"], dependencies=[Depends(require_enabled)])


class ConsentDecisionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")
    allow: bool

    model_config = ConfigDict(populate_by_name=True)


class ConsentDismissRequest(BaseModel):
    session_id: str = Field(..., min_length=1, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


@router.get("/pending")
async def list_pending(services: BrokerServices = Depends(get_services)):
    prompts = services.consent.pending()
    return {"prompts": [prompt.to_dict() for prompt in prompts], "count": len(prompts)}


@router.get("/stream")
async def stream_prompts(services: BrokerServices = Depends(get_services)):
    """Push each new consent prompt to the local surface as it is created."""
    broker = services.consent
    surface = broker.attach()

    async def _frames():
        try:
            async for prompt in surface:
                yield f"event: consent\ndata: {json.dumps(prompt.to_dict(), separators=(',', ':'))}\n\n"
        finally:
            broker.detach(surface)

    return StreamingResponse(_frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("")
async def decide(request: ConsentDecisionRequest, services: BrokerServices = Depends(get_services)):
    state = await services.consent.decide(request.session_id, request.allow)
    if state is None:
        raise SessionNotFoundError(request.session_id)
    return {"sessionId": request.session_id, "consentState": state.value}


@router.post("/dismiss")
async def dismiss(request: ConsentDismissRequest, services: BrokerServices = Depends(get_services)):
    state = await services.consent.dismiss(request.session_id)
    if state is None:
        raise SessionNotFoundError(request.session_id)
    return {"sessionId": request.session_id, "consentState": state.value}
