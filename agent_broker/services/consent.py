"""
Consent Broker

Shows a prompt on every attached consent surface whenever a session is
created and routes the user's answer back to the session manager. Holds no
session state of its own; the manager stays the source of truth.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from agent_broker.core.channel import EventChannel
from agent_broker.core.models import ConsentState, Session
from agent_broker.core.sessions import LifecycleEvent, SessionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentPrompt:
    session_id: str
    domain: str
    url: str
    actions: List[str]
    expires_at: float

    @classmethod
    def for_session(cls, session: Session) -> "ConsentPrompt":
        return cls(
            session_id=session.id,
            domain=session.domain,
            url=session.requested_url,
            actions=[action.value for action in session.actions],
            expires_at=session.expires_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "domain": self.domain,
            "url": self.url,
            "actions": self.actions,
            "expiresAt": datetime.fromtimestamp(self.expires_at, tz=timezone.utc).isoformat(),
        }


class ConsentBroker:
    """Fans session prompts out to consent surfaces (local UI, tray, CLI)."""

    def __init__(self, session_manager: SessionManager, surface_capacity: int = 32):
        self.sessions = session_manager
        self.surface_capacity = surface_capacity
        self._surfaces: Set[EventChannel] = set()
        session_manager.subscribe(LifecycleEvent.SESSION_CREATED, self._on_session_created)

    @property
    def surface_count(self) -> int:
        return len(self._surfaces)

    def attach(self) -> EventChannel:
        """Register a surface. It first receives every prompt still pending."""
        surface: EventChannel = EventChannel(self.surface_capacity)
        for prompt in reversed(self.pending()):
            surface.put_nowait(prompt)
        self._surfaces.add(surface)
        logger.debug("Consent surface attached (%d total)", len(self._surfaces))
        return surface

    def detach(self, surface: EventChannel) -> None:
        self._surfaces.discard(surface)
        surface.close()

    def close(self) -> None:
        for surface in list(self._surfaces):
            self.detach(surface)
        self.sessions.unsubscribe(LifecycleEvent.SESSION_CREATED, self._on_session_created)

    def _on_session_created(self, session: Session) -> None:
        prompt = ConsentPrompt.for_session(session)
        for surface in list(self._surfaces):
            # A surface that stopped reading loses prompts rather than blocking creates.
            if not surface.put_nowait(prompt):
                logger.warning("Consent surface is full or closed; dropping prompt for %s", session.id)

    def pending(self) -> List[ConsentPrompt]:
        """Prompts for every pending session, newest first."""
        return [ConsentPrompt.for_session(s) for s in self.sessions.pending_sessions()]

    async def decide(self, session_id: str, allow: bool) -> Optional[ConsentState]:
        return await self.sessions.handle_consent(session_id, allow)

    async def dismiss(self, session_id: str) -> Optional[ConsentState]:
        """Closing the prompt without answering cancels the session."""
        return await self.sessions.cancel(session_id, reason="consent_dismissed")
