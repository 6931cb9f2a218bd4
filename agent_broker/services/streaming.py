"""
Event Stream Gateway

Turns a consented session into a server-sent event stream:

    retry: 5000

    data: {"type": "OPENING", "timestamp": ..., "data": {...}}

    ...

    event: end
    data: {}

The automation run starts only once the consumer has taken the first frame,
and a consumer that goes away cancels the run.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Optional, Set

from agent_broker.core.logging import log_session_event
from agent_broker.core.models import AgentEvent, ConsentState, Session
from agent_broker.core.sessions import SessionManager
from agent_broker.services.executor import AutomationExecutor

logger = logging.getLogger(__name__)


def format_retry(retry_ms: int) -> str:
    return f"retry: {retry_ms}\n\n"


def format_event(event: AgentEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), separators=(',', ':'))}\n\n"


def format_end() -> str:
    return "event: end\ndata: {}\n\n"


class EventStreamGateway:
    """Validates stream requests and drives the executor behind each stream."""

    def __init__(
        self,
        session_manager: SessionManager,
        executor: AutomationExecutor,
        retry_ms: int = 5000,
        consent_wait_seconds: float = 0,
    ):
        self.sessions = session_manager
        self.executor = executor
        self.retry_ms = retry_ms
        self.consent_wait_seconds = consent_wait_seconds
        self._runs: Set[asyncio.Task] = set()

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    async def open(self, session_id: str, user_id: str, wait: Optional[float] = None) -> AsyncIterator[str]:
        """
        Claim the session's single stream and return its frame iterator.

        Raises:
            SessionNotFoundError: unknown, expired or owned by someone else.
            SessionNotReadyError: consent is not "allowed", or the session was
                already streamed.
        """
        session = self.sessions.get(session_id, user_id)
        timeout = self.consent_wait_seconds if wait is None else wait
        if session.consent is ConsentState.PENDING and timeout > 0:
            await self.sessions.wait_for_decision(session, timeout)
        await self.sessions.claim_stream(session)
        log_session_event("stream_opened", session.id)
        return self._frames(session)

    async def _frames(self, session: Session) -> AsyncIterator[str]:
        run: Optional[asyncio.Task] = None
        try:
            yield format_retry(self.retry_ms)
            run = asyncio.create_task(self.executor.run(session))
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)
            async for event in session.channel:
                yield format_event(event)
            yield format_end()
        finally:
            if run is None or not run.done():
                if session.cancellation.cancel("stream_disconnected"):
                    log_session_event("stream_disconnected", session.id)
                session.channel.close()
                if run is None:
                    self.sessions.mark_finished(session)

    async def shutdown(self) -> None:
        """Cancel every run still in flight and wait for them to unwind."""
        runs = list(self._runs)
        for run in runs:
            run.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
            logger.info("Cancelled %d in-flight automation runs", len(runs))
