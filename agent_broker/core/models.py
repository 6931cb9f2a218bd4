"""
Core broker models.

Sessions, capability claims and automation events are plain dataclasses;
automation plans arrive over HTTP so they are pydantic models.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from agent_broker.core.cancellation import CancellationToken
from agent_broker.core.channel import EventChannel


class AgentAction(str, Enum):
    OPEN = "open"
    FILL = "fill"
    UPLOAD = "upload"
    CLICK = "click"


KNOWN_ACTIONS = {action.value for action in AgentAction}


class ConsentState(str, Enum):
    PENDING = "pending"
    ALLOWED = "allowed"
    DENIED = "denied"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ConsentState.PENDING


class AgentEventType(str, Enum):
    OPENING = "OPENING"
    OPENED_FORM = "OPENED_FORM"
    FILLED_FIELDS = "FILLED_FIELDS"
    UPLOADED_IMAGES = "UPLOADED_IMAGES"
    SUBMITTED = "SUBMITTED"
    PUBLISHED = "PUBLISHED"
    NEEDS_LOGIN = "NEEDS_LOGIN"
    CHALLENGE_DETECTED = "CHALLENGE_DETECTED"
    ERROR = "ERROR"


def normalize_actions(values: Any) -> List[AgentAction]:
    """Keep known actions in first-seen order, dropping duplicates and unknowns."""
    if not isinstance(values, (list, tuple)):
        return []
    normalized: List[AgentAction] = []
    seen = set()
    for value in values:
        name = str(value.value if isinstance(value, AgentAction) else value or "").strip().lower()
        if name not in KNOWN_ACTIONS or name in seen:
            continue
        normalized.append(AgentAction(name))
        seen.add(name)
    return normalized


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a capability token."""
    jti: str
    sub: str
    domain: str
    exp: int
    iat: int
    actions: Tuple[AgentAction, ...] = ()

    @property
    def user_id(self) -> str:
        return self.sub


@dataclass(frozen=True)
class AgentEvent:
    type: AgentEventType
    timestamp: int = field(default_factory=_epoch_ms)
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value, "timestamp": self.timestamp}
        if self.data is not None:
            payload["data"] = self.data
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AgentEvent":
        return cls(
            type=AgentEventType(payload["type"]),
            timestamp=int(payload.get("timestamp") or 0),
            data=payload.get("data"),
        )


@dataclass
class RateWindow:
    window_start: float
    count: int = 0


class FillStep(BaseModel):
    selector: str = Field(..., min_length=1)
    text: str = ""


class UploadStep(BaseModel):
    selector: str = Field(..., min_length=1)
    files: List[str] = Field(default_factory=list)


class AutomationPlan(BaseModel):
    """What the executor types, uploads and clicks for each permitted action."""
    url: Optional[str] = None
    inputs: List[FillStep] = Field(default_factory=list)
    upload: Optional[UploadStep] = None
    submit_selector: Optional[str] = Field(default=None, alias="submitSelector")

    model_config = ConfigDict(populate_by_name=True)


@dataclass
class Session:
    """One authorized automation run against one target domain."""
    user_id: str
    domain: str
    requested_url: str
    actions: List[AgentAction]
    token_id: str
    created_at: float
    expires_at: float
    rate_window: RateWindow
    channel: EventChannel
    plan: AutomationPlan = field(default_factory=AutomationPlan)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    consent: ConsentState = ConsentState.PENDING
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    decided: asyncio.Event = field(default_factory=asyncio.Event)
    stream_opened: bool = False
    finished: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "consentState": self.consent.value,
            "domain": self.domain,
            "actions": [action.value for action in self.actions],
            "requestedUrl": self.requested_url,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
        }
