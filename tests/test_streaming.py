import asyncio
import json
import time
import uuid

import pytest

from agent_broker.browser.dry_run import DryRunDriver
from agent_broker.core.errors import SessionNotFoundError, SessionNotReadyError
from agent_broker.core.models import AgentAction, AgentEvent, AgentEventType, ConsentState, TokenClaims
from agent_broker.core.sessions import SessionManager
from agent_broker.services.executor import AutomationExecutor
from agent_broker.services.streaming import EventStreamGateway, format_end, format_event, format_retry

from conftest import FakeClock, make_policy


def _gateway(driver_factory=None, **kwargs):
    policy = make_policy()
    manager = SessionManager(policy)
    executor = AutomationExecutor(policy, manager, driver_factory or (lambda s: DryRunDriver()))
    return manager, EventStreamGateway(manager, executor, **kwargs)


async def _create(manager, user="user-1", actions=("open", "fill", "click")):
    now = int(time.time())
    claims = TokenClaims(
        jti=str(uuid.uuid4()),
        sub=user,
        domain="example.com",
        iat=now,
        exp=now + 120,
        actions=tuple(AgentAction(a) for a in actions),
    )
    return await manager.create(claims, "https://example.com/sell", list(actions))


def _event_types(frames):
    return [json.loads(frame[len("data: "):])["type"] for frame in frames if frame.startswith("data: {\"type\"")]


def test_frame_formatting():
    event = AgentEvent(type=AgentEventType.OPENING, timestamp=123, data={"url": "https://example.com/"})
    assert format_retry(5000) == "retry: 5000\n\n"
    assert format_event(event) == 'data: {"type":"OPENING","timestamp":123,"data":{"url":"https://example.com/"}}\n\n'
    assert format_end() == "event: end\ndata: {}\n\n"


def test_allowed_session_streams_every_phase_then_ends():
    async def scenario():
        manager, gateway = _gateway(retry_ms=2500)
        session = await _create(manager)
        await manager.handle_consent(session.id, True)
        frames = await gateway.open(session.id, "user-1")
        return session, [frame async for frame in frames]

    session, frames = asyncio.run(scenario())
    assert frames[0] == "retry: 2500\n\n"
    assert _event_types(frames) == ["OPENING", "OPENED_FORM", "FILLED_FIELDS", "SUBMITTED", "PUBLISHED"]
    assert frames[-1] == format_end()
    assert session.finished
    assert not session.cancellation.cancelled


def test_denied_session_is_not_ready():
    async def scenario():
        manager, gateway = _gateway()
        session = await _create(manager)
        await manager.handle_consent(session.id, False)
        await gateway.open(session.id, "user-1")

    with pytest.raises(SessionNotReadyError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.context["state"] == "denied"
    assert exc_info.value.status_code == 409


def test_pending_session_is_not_ready_without_wait():
    async def scenario():
        manager, gateway = _gateway()
        session = await _create(manager)
        await gateway.open(session.id, "user-1")

    with pytest.raises(SessionNotReadyError):
        asyncio.run(scenario())


def test_foreign_session_is_not_found():
    async def scenario():
        manager, gateway = _gateway()
        session = await _create(manager, user="owner")
        await manager.handle_consent(session.id, True)
        await gateway.open(session.id, "someone-else")

    with pytest.raises(SessionNotFoundError):
        asyncio.run(scenario())


def test_second_stream_for_same_session_is_rejected():
    async def scenario():
        manager, gateway = _gateway()
        session = await _create(manager)
        await manager.handle_consent(session.id, True)
        frames = await gateway.open(session.id, "user-1")
        [frame async for frame in frames]
        await gateway.open(session.id, "user-1")

    with pytest.raises(SessionNotReadyError):
        asyncio.run(scenario())


def test_wait_holds_stream_open_until_consent():
    async def scenario():
        manager, gateway = _gateway()
        session = await _create(manager, actions=("open",))

        async def approve_later():
            await asyncio.sleep(0.02)
            await manager.handle_consent(session.id, True)

        approver = asyncio.create_task(approve_later())
        frames = await gateway.open(session.id, "user-1", wait=2)
        collected = [frame async for frame in frames]
        await approver
        return collected

    assert _event_types(asyncio.run(scenario())) == ["OPENING", "OPENED_FORM"]


class GatedDriver(DryRunDriver):
    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def open(self, url):
        await self.release.wait()
        return await super().open(url)


def test_consumer_disconnect_cancels_the_run():
    async def scenario():
        driver = GatedDriver()
        manager, gateway = _gateway(driver_factory=lambda s: driver)
        session = await _create(manager)
        await manager.handle_consent(session.id, True)

        frames = await gateway.open(session.id, "user-1")
        assert (await frames.__anext__()).startswith("retry:")
        assert "OPENING" in await frames.__anext__()
        await frames.aclose()
        assert session.cancellation.reason == "stream_disconnected"
        assert session.channel.closed

        driver.release.set()
        for _ in range(100):
            if session.finished:
                break
            await asyncio.sleep(0.01)
        return session, driver

    session, driver = asyncio.run(scenario())
    assert session.finished
    assert driver.closed
    assert not any(op == "click" for op, _ in driver.operations)


def test_closing_before_the_run_starts_marks_session_finished():
    async def scenario():
        manager, gateway = _gateway()
        session = await _create(manager)
        await manager.handle_consent(session.id, True)
        frames = await gateway.open(session.id, "user-1")
        await frames.__anext__()
        await frames.aclose()
        return session, gateway

    session, gateway = asyncio.run(scenario())
    assert session.finished
    assert session.cancellation.cancelled
    assert gateway.active_runs == 0


def test_shutdown_cancels_in_flight_runs():
    async def scenario():
        driver = GatedDriver()
        manager, gateway = _gateway(driver_factory=lambda s: driver)
        session = await _create(manager)
        await manager.handle_consent(session.id, True)
        frames = await gateway.open(session.id, "user-1")
        await frames.__anext__()
        await frames.__anext__()
        assert gateway.active_runs == 1
        await gateway.shutdown()
        await frames.aclose()
        return session, gateway

    session, gateway = asyncio.run(scenario())
    assert gateway.active_runs == 0
    assert session.finished
    assert session.cancellation.reason == "shutdown"
    assert session.consent is ConsentState.ALLOWED


def test_expiry_during_a_streamed_run_cancels_it_and_ends_the_stream():
    async def scenario():
        clock = FakeClock()
        driver = GatedDriver()
        policy = make_policy()
        manager = SessionManager(policy, clock=clock)
        gateway = EventStreamGateway(manager, AutomationExecutor(policy, manager, lambda s: driver))
        now = int(clock())
        claims = TokenClaims(
            jti=str(uuid.uuid4()),
            sub="user-1",
            domain="example.com",
            iat=now,
            exp=now + 120,
            actions=(AgentAction.OPEN, AgentAction.FILL, AgentAction.CLICK),
        )
        session = await manager.create(claims, "https://example.com/sell", ["open", "fill", "click"])
        await manager.handle_consent(session.id, True)

        frames = await gateway.open(session.id, "user-1")
        collected = [await frames.__anext__(), await frames.__anext__()]

        clock.advance(121)
        removed = await manager.clear_expired()
        driver.release.set()
        collected.extend([frame async for frame in frames])
        return session, removed, collected, driver

    session, removed, frames, driver = asyncio.run(scenario())
    assert removed == [session.id]
    assert _event_types(frames) == ["OPENING", "OPENED_FORM", "ERROR"]
    error = json.loads(frames[-2][len("data: "):])
    assert error["data"] == {"code": "CANCELLED", "reason": "expired"}
    assert frames[-1] == format_end()
    assert session.finished
    assert driver.closed
    assert not any(op == "click" for op, _ in driver.operations)
