"""
Automation Executor

Drives one browser page through a session's permitted actions, in order,
emitting one lifecycle event per phase onto the session's channel:

    open   -> OPENING, OPENED_FORM
    fill   -> FILLED_FIELDS
    upload -> UPLOADED_IMAGES
    click  -> SUBMITTED, PUBLISHED

Every action is policy- and rate-gated before the driver is touched, and the
cancellation token is checked at every phase boundary. Failures never escape
`run()`; they become NEEDS_LOGIN, CHALLENGE_DETECTED or ERROR events and the
channel is closed afterwards.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from agent_broker.browser.base import ChallengeDetectedError, DriverError, FormDriver, NeedsLoginError, PageState
from agent_broker.core.cancellation import RunCancelled
from agent_broker.core.errors import BrokerError, ErrorCode, SessionNotReadyError
from agent_broker.core.logging import bind_session, log_error, log_session_event, unbind_session
from agent_broker.core.metrics import record_automation_run
from agent_broker.core.models import AgentAction, AgentEvent, AgentEventType, Session
from agent_broker.core.policy import PolicyEngine
from agent_broker.core.sessions import SessionManager

logger = logging.getLogger(__name__)

DEFAULT_SUBMIT_SELECTOR = "button[type='submit'], input[type='submit']"

DriverFactory = Callable[[Session], FormDriver]


class AutomationExecutor:
    """Runs consented sessions against pages produced by `driver_factory`."""

    def __init__(self, policy: PolicyEngine, session_manager: SessionManager, driver_factory: DriverFactory):
        self.policy = policy
        self.sessions = session_manager
        self.driver_factory = driver_factory
        self._drivers: Dict[str, FormDriver] = {}

    async def _emit(self, session: Session, event_type: AgentEventType, data: Optional[Dict[str, Any]] = None) -> AgentEventType:
        await session.channel.put(AgentEvent(type=event_type, data=data))
        return event_type

    async def run(self, session: Session) -> AgentEventType:
        """Execute the session's plan. Returns the type of the last event emitted."""
        started = time.time()
        outcome = AgentEventType.ERROR
        driver: Optional[FormDriver] = None
        log_context = bind_session(session.id)
        log_session_event("run_started", session.id, actions=[a.value for a in session.actions])
        try:
            session.cancellation.raise_if_cancelled()
            self.policy.check_domain(session.domain)
            driver = self.driver_factory(session)
            await driver.start()
            self._drivers[session.id] = driver
            for action in session.actions:
                outcome = await self._run_action(session, driver, action)
        except RunCancelled as exc:
            outcome = await self._emit(session, AgentEventType.ERROR, {"code": "CANCELLED", "reason": exc.reason})
        except NeedsLoginError as exc:
            outcome = await self._emit(session, AgentEventType.NEEDS_LOGIN, exc.state.to_dict())
        except ChallengeDetectedError as exc:
            outcome = await self._emit(
                session, AgentEventType.CHALLENGE_DETECTED, {**exc.state.to_dict(), "kind": exc.kind}
            )
        except BrokerError as exc:
            outcome = await self._emit(session, AgentEventType.ERROR, {
                "code": exc.code.value,
                "message": exc.message,
                "detail": exc.detail,
            })
        except DriverError as exc:
            outcome = await self._emit(session, AgentEventType.ERROR, {
                "code": ErrorCode.EXECUTION_ERROR.value,
                "message": str(exc),
                "cause": exc.to_dict(),
            })
        except asyncio.CancelledError:
            session.cancellation.cancel("shutdown")
            raise
        except Exception as exc:
            log_error("automation_failed", str(exc), {"session_id": session.id}, exception=exc)
            outcome = await self._emit(session, AgentEventType.ERROR, {
                "code": ErrorCode.EXECUTION_ERROR.value,
                "message": "automation failed",
                "cause": {"code": exc.__class__.__name__, "message": str(exc)},
            })
        finally:
            self._drivers.pop(session.id, None)
            if driver is not None:
                try:
                    await driver.close()
                except Exception as exc:
                    logger.warning("Driver close failed for session %s: %s", session.id, exc)
            session.channel.close()
            self.sessions.mark_finished(session)
            duration_ms = (time.time() - started) * 1000
            record_automation_run(outcome.value, duration_ms)
            log_session_event("run_finished", session.id, outcome=outcome.value,
                              duration_ms=round(duration_ms, 2))
            unbind_session(log_context)
        return outcome

    async def page_state(self, session: Session) -> PageState:
        """Where the session's page is right now. Only available while its run is in flight."""
        driver = self._drivers.get(session.id)
        if driver is None:
            raise SessionNotReadyError(session.id, session.consent.value, detail="no automation run is active")
        try:
            return await driver.state()
        except DriverError as exc:
            raise SessionNotReadyError(session.id, session.consent.value, detail=f"page unavailable: {exc}")

    async def _run_action(self, session: Session, driver: FormDriver, action: AgentAction) -> AgentEventType:
        session.cancellation.raise_if_cancelled()
        self.policy.check_action(session.domain, session.actions, action)
        target_url = None
        if action is AgentAction.OPEN:
            target_url = self.policy.check_navigation(session.domain, session.plan.url or session.requested_url)
        await self.sessions.track_action(session, action)

        if action is AgentAction.OPEN:
            return await self._open(session, driver, target_url)
        if action is AgentAction.FILL:
            return await self._fill(session, driver)
        if action is AgentAction.UPLOAD:
            return await self._upload(session, driver)
        return await self._click(session, driver)

    async def _open(self, session: Session, driver: FormDriver, url: str) -> AgentEventType:
        await self._emit(session, AgentEventType.OPENING, {"url": url})
        state = await driver.open(url)
        return await self._emit(session, AgentEventType.OPENED_FORM, state.to_dict())

    async def _fill(self, session: Session, driver: FormDriver) -> AgentEventType:
        filled = 0
        for step in session.plan.inputs:
            session.cancellation.raise_if_cancelled()
            await driver.clear(step.selector)
            for char in step.text:
                await session.cancellation.sleep(self.policy.typing_delay())
                await driver.type_char(step.selector, char)
            filled += 1
        return await self._emit(session, AgentEventType.FILLED_FIELDS, {"count": filled})

    async def _upload(self, session: Session, driver: FormDriver) -> AgentEventType:
        step = session.plan.upload
        attached = 0
        if step is not None and step.files:
            attached = await driver.upload(step.selector, step.files)
        return await self._emit(session, AgentEventType.UPLOADED_IMAGES, {"files": attached})

    async def _click(self, session: Session, driver: FormDriver) -> AgentEventType:
        selector = session.plan.submit_selector or DEFAULT_SUBMIT_SELECTOR
        state = await driver.click(selector)
        await self._emit(session, AgentEventType.SUBMITTED)
        session.cancellation.raise_if_cancelled()
        return await self._emit(session, AgentEventType.PUBLISHED, {"url": state.url})
