"""
Session Manager

Owns the session registry and the per-session consent state machine:

    pending --allow--> allowed
    pending --deny---> denied
    pending --cancel-> cancelled

allowed, denied and cancelled are terminal. Every registry mutation happens
under one asyncio lock so that racing creates on the same token id and racing
consent decisions both resolve to "first writer wins".
"""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

from agent_broker.core.channel import EventChannel
from agent_broker.core.errors import (
    DuplicateTokenError,
    InvalidTokenError,
    PolicyViolationError,
    SessionNotFoundError,
    SessionNotReadyError,
)
from agent_broker.core.logging import log_session_event
from agent_broker.core.metrics import record_session_transition
from agent_broker.core.models import (
    AgentAction,
    AutomationPlan,
    ConsentState,
    Session,
    TokenClaims,
    normalize_actions,
)
from agent_broker.core.policy import PolicyEngine, parse_url
from agent_broker.core.rate_limit import SlidingWindowRateLimiter
from agent_broker.core.tokens import permits

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    SESSION_CREATED = "session:created"
    CONSENT_DECIDED = "session:decided"
    SESSION_REMOVED = "session:removed"


class SessionManager:
    """Registry of live sessions. Construct one per process (or per test)."""

    def __init__(
        self,
        policy: PolicyEngine,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        channel_capacity: int = 256,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            policy.max_actions_per_minute, clock=clock
        )
        self.channel_capacity = channel_capacity
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sessions: Dict[str, Session] = {}
        self._token_index: Dict[str, str] = {}
        # jti -> exp; kept after the session is gone so a token is never reused
        self._consumed_tokens: Dict[str, int] = {}
        self._subscribers: Dict[LifecycleEvent, List[Callable]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    # ==================== LIFECYCLE NOTIFICATIONS ====================

    def subscribe(self, event: LifecycleEvent, handler: Callable) -> None:
        self._subscribers.setdefault(event, []).append(handler)
        logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), event.value)

    def unsubscribe(self, event: LifecycleEvent, handler: Callable) -> None:
        if event in self._subscribers:
            self._subscribers[event] = [h for h in self._subscribers[event] if h != handler]

    async def _publish(self, event: LifecycleEvent, session: Session) -> None:
        handlers = list(self._subscribers.get(event, []))
        if not handlers:
            logger.debug("No handlers for %s", event.value)
            return
        for handler in handlers:
            try:
                result = handler(session)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                logger.error("Lifecycle handler %s failed for %s: %s",
                             getattr(handler, "__name__", handler), event.value, exc)

    # ==================== STATE TRANSITIONS ====================

    async def create(
        self,
        claims: TokenClaims,
        requested_url: str,
        requested_actions: List[str],
        plan: Optional[AutomationPlan] = None,
    ) -> Session:
        """Allocate a pending session for verified claims."""
        url, host = parse_url(requested_url)
        if host != claims.domain.lower():
            raise PolicyViolationError(f"token_domain_mismatch:{host}", host=host)
        self.policy.check_domain(host)

        actions = [a for a in normalize_actions(requested_actions) if permits(claims, a)]
        if not actions:
            raise PolicyViolationError("no_permitted_actions")

        plan = plan or AutomationPlan()
        if plan.url:
            self.policy.check_navigation(host, plan.url)

        async with self._lock:
            now = self._clock()
            if claims.jti in self._consumed_tokens:
                raise DuplicateTokenError()
            if claims.exp <= now:
                raise InvalidTokenError("token has expired")

            session = Session(
                user_id=claims.sub,
                domain=host,
                requested_url=url,
                actions=actions,
                token_id=claims.jti,
                created_at=now,
                expires_at=float(claims.exp),
                rate_window=self.rate_limiter.new_window(),
                channel=EventChannel(self.channel_capacity),
                plan=plan,
            )
            self._sessions[session.id] = session
            self._token_index[claims.jti] = session.id
            self._consumed_tokens[claims.jti] = claims.exp

        record_session_transition("created")
        log_session_event("created", session.id, domain=session.domain,
                          actions=[a.value for a in session.actions])
        await self._publish(LifecycleEvent.SESSION_CREATED, session)
        return session

    async def handle_consent(self, session_id: str, allow: bool) -> Optional[ConsentState]:
        """
        Apply a consent decision. Unknown or already-decided sessions are a
        silent no-op; the first decision wins.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_expired(self._clock()):
                return None
            if session.consent.is_terminal:
                return session.consent
            session.consent = ConsentState.ALLOWED if allow else ConsentState.DENIED
            session.decided.set()

        record_session_transition(session.consent.value)
        log_session_event("consent", session.id, state=session.consent.value)
        await self._publish(LifecycleEvent.CONSENT_DECIDED, session)
        return session.consent

    async def cancel(self, session_id: str, reason: str = "cancelled") -> Optional[ConsentState]:
        """Cancel a pending session and abort any run in flight."""
        transitioned = False
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.consent is ConsentState.PENDING:
                session.consent = ConsentState.CANCELLED
                session.decided.set()
                transitioned = True
            session.cancellation.cancel(reason)

        if transitioned:
            record_session_transition("cancelled")
            log_session_event("consent", session.id, state="cancelled", reason=reason)
            await self._publish(LifecycleEvent.CONSENT_DECIDED, session)
        return session.consent

    async def clear_expired(self) -> List[str]:
        """Remove expired sessions and finished runs whose stream has closed."""
        removed: List[Session] = []
        async with self._lock:
            now = self._clock()
            for session_id, session in list(self._sessions.items()):
                expired = session.is_expired(now)
                if not expired and not (session.finished and session.channel.closed):
                    continue
                del self._sessions[session_id]
                self._token_index.pop(session.token_id, None)
                session.cancellation.cancel("expired" if expired else "finished")
                # A run in flight reports the cancellation and closes the channel itself.
                if not session.stream_opened or session.finished:
                    session.channel.close()
                removed.append(session)
            for jti, exp in list(self._consumed_tokens.items()):
                # An expired token cannot verify again, so its id can be forgotten.
                if exp <= now and jti not in self._token_index:
                    del self._consumed_tokens[jti]

        for session in removed:
            record_session_transition("removed")
            log_session_event("removed", session.id, state=session.consent.value)
            await self._publish(LifecycleEvent.SESSION_REMOVED, session)
        return [session.id for session in removed]

    # ==================== LOOKUPS ====================

    def lookup(self, session_id: str) -> Optional[Session]:
        """Internal lookup without an ownership check."""
        return self._sessions.get(session_id)

    def get(self, session_id: str, user_id: str) -> Session:
        """Ownership-checked lookup; a foreign session looks exactly like a missing one."""
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError(session_id)
        if session.is_expired(self._clock()):
            raise SessionNotFoundError(session_id)
        return session

    def pending_sessions(self) -> List[Session]:
        """Pending, unexpired sessions, newest first."""
        now = self._clock()
        pending = [
            s for s in self._sessions.values()
            if s.consent is ConsentState.PENDING and not s.is_expired(now)
        ]
        return sorted(pending, key=lambda s: s.created_at, reverse=True)

    async def wait_for_decision(self, session: Session, timeout: float) -> ConsentState:
        if session.consent is ConsentState.PENDING and timeout > 0:
            try:
                await asyncio.wait_for(session.decided.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
        return session.consent

    # ==================== RUN BOOKKEEPING ====================

    async def claim_stream(self, session: Session) -> None:
        """Mark a session as streamed; only one stream per session."""
        async with self._lock:
            if session.id not in self._sessions:
                raise SessionNotFoundError(session.id)
            if session.consent is not ConsentState.ALLOWED:
                raise SessionNotReadyError(session.id, session.consent.value)
            if session.stream_opened or session.finished:
                raise SessionNotReadyError(session.id, "streamed")
            session.stream_opened = True

    async def track_action(self, session: Session, action: AgentAction) -> int:
        """Count one action against the session's rate window."""
        async with self._lock:
            remaining = self.rate_limiter.check(session.rate_window)
        logger.debug("Session %s action %s (%d remaining)", session.id, action.value, remaining)
        return remaining

    def mark_finished(self, session: Session) -> None:
        session.finished = True
