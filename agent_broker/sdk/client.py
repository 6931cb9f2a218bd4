"""
Agent Session Broker client.

Async httpx client for the broker's HTTP and server-sent event surface, used
by the remote caller that requests sessions and follows their progress.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from agent_broker.core.models import AgentEvent, AutomationPlan

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8765"
DEFAULT_TIMEOUT = 120.0


class BrokerClientError(Exception):
    """Non-2xx answer from the broker, carrying its error code."""

    def __init__(self, status_code: int, code: str, message: str = "", detail: Optional[str] = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.detail = detail
        super().__init__(f"{status_code} {code}: {message}" if message else f"{status_code} {code}")


def _raise_for_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and isinstance(body.get("detail"), dict):
        # FastAPI HTTPException wraps the payload in "detail"
        body = body["detail"]
    if not isinstance(body, dict):
        body = {}
    code = body.get("error") or f"HTTP_{response.status_code}"
    detail = body.get("detail")
    raise BrokerClientError(
        response.status_code,
        str(code),
        str(body.get("message") or ""),
        detail if isinstance(detail, str) else None,
    )


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    """
    Group SSE lines into frames.

    Yields {"event": name or None, "data": joined data, "retry": ms or None}
    for every frame terminated by a blank line.
    """
    event: Optional[str] = None
    data: List[str] = []
    retry: Optional[int] = None
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if event is not None or data or retry is not None:
                yield {"event": event, "data": "\n".join(data), "retry": retry}
            event, data, retry = None, [], None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
        elif name == "retry" and value.isdigit():
            retry = int(value)
    if event is not None or data:
        yield {"event": event, "data": "\n".join(data), "retry": retry}


class AgentClient:
    """
    Client for a locally running broker.

    Usage:
        async with AgentClient(user_id="user-1") as client:
            started = await client.start("poshmark.com", ["open"], "https://poshmark.com/sell")
            async for event in client.stream(started["session"]["id"]):
                print(event.type)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        user_id: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.user_id:
            headers["Authorization"] = f"Bearer {self.user_id}"
        return headers

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._http.request(method, path, json=payload, headers=self.headers)
        _raise_for_error(response)
        return response.json()

    @staticmethod
    def _plan_payload(plan: Optional[AutomationPlan]) -> Optional[Dict[str, Any]]:
        if plan is None:
            return None
        return plan.model_dump(by_alias=True, exclude_none=True)

    async def start(
        self,
        domain: str,
        actions: List[str],
        requested_url: str,
        device: Optional[Dict[str, Any]] = None,
        plan: Optional[AutomationPlan] = None,
    ) -> Dict[str, Any]:
        """Mint a token and open a pending session. Returns {token, expiresAt, session}."""
        payload: Dict[str, Any] = {"domain": domain, "actions": actions, "requestedUrl": requested_url}
        if device:
            payload["device"] = device
        if plan is not None:
            payload["plan"] = self._plan_payload(plan)
        return await self._request("POST", "/start", payload)

    async def start_with_token(
        self,
        token: str,
        url: str,
        actions: List[str],
        plan: Optional[AutomationPlan] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"token": token, "url": url, "actions": actions}
        if plan is not None:
            payload["plan"] = self._plan_payload(plan)
        return await self._request("POST", "/session/start", payload)

    async def session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/sessions/{session_id}")

    async def page_state(self, session_id: str) -> Dict[str, Any]:
        """URL and title of the page the session's run is on right now."""
        return await self._request("GET", f"/sessions/{session_id}/page")

    async def cancel(self, session_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/cancel", {"sessionId": session_id})

    async def decide(self, session_id: str, allow: bool) -> Dict[str, Any]:
        """Answer a consent prompt (local consent surfaces only)."""
        return await self._request("POST", "/consent", {"sessionId": session_id, "allow": allow})

    async def pending_consents(self) -> List[Dict[str, Any]]:
        result = await self._request("GET", "/consent/pending")
        return result.get("prompts", [])

    async def stream(self, session_id: str, wait: Optional[float] = None) -> AsyncIterator[AgentEvent]:
        """Follow a session's automation run until the broker sends its end marker."""
        params = {"wait": wait} if wait is not None else None
        async with self._http.stream(
            "GET", f"/events/{session_id}", headers=self.headers, params=params
        ) as response:
            if not response.is_success:
                await response.aread()
                _raise_for_error(response)
            async for frame in parse_sse(response.aiter_lines()):
                if frame["event"] == "end":
                    return
                if not frame["data"]:
                    continue
                try:
                    payload = json.loads(frame["data"])
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed event frame for session %s", session_id)
                    continue
                yield AgentEvent.from_dict(payload)
