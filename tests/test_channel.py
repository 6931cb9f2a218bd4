import asyncio

import pytest

from agent_broker.core.cancellation import CancellationToken, RunCancelled
from agent_broker.core.channel import EventChannel


def test_channel_yields_in_put_order_and_stops_after_close():
    async def scenario():
        channel = EventChannel(8)
        for item in ("a", "b", "c"):
            assert await channel.put(item)
        channel.close()
        return [item async for item in channel]

    assert asyncio.run(scenario()) == ["a", "b", "c"]


def test_put_after_close_is_dropped():
    async def scenario():
        channel = EventChannel(8)
        channel.close()
        channel.close()
        accepted = await channel.put("late")
        return accepted, channel.put_nowait("later"), [item async for item in channel]

    accepted, accepted_nowait, items = asyncio.run(scenario())
    assert accepted is False
    assert accepted_nowait is False
    assert items == []


def test_close_releases_a_producer_blocked_on_a_full_channel():
    async def scenario():
        channel = EventChannel(1)
        await channel.put("first")
        blocked = asyncio.create_task(channel.put("second"))
        await asyncio.sleep(0)
        assert not blocked.done()
        channel.close()
        return await asyncio.wait_for(blocked, timeout=1)

    assert asyncio.run(scenario()) is False


def test_consumer_waits_for_items():
    async def scenario():
        channel = EventChannel(4)

        async def produce():
            await asyncio.sleep(0.01)
            await channel.put(1)
            await channel.put(2)
            channel.close()

        producer = asyncio.create_task(produce())
        items = [item async for item in channel]
        await producer
        return items

    assert asyncio.run(scenario()) == [1, 2]


def test_close_on_a_full_channel_keeps_buffered_events():
    async def scenario():
        channel = EventChannel(2)
        await channel.put("OPENING")
        await channel.put("PUBLISHED")
        channel.close()
        return [item async for item in channel]

    assert asyncio.run(scenario()) == ["OPENING", "PUBLISHED"]


def test_waiting_consumer_wakes_on_close():
    async def scenario():
        channel = EventChannel(1)
        consumer = asyncio.create_task(channel.get())
        await asyncio.sleep(0)
        channel.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(consumer, timeout=1)

    asyncio.run(scenario())


def test_first_cancellation_reason_wins():
    token = CancellationToken()
    assert token.cancel("expired") is True
    assert token.cancel("stream_disconnected") is False
    assert token.cancelled
    assert token.reason == "expired"
    with pytest.raises(RunCancelled) as exc_info:
        token.raise_if_cancelled()
    assert exc_info.value.reason == "expired"


def test_cancellable_sleep_wakes_early():
    async def scenario():
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel, "expired")
        started = loop.time()
        with pytest.raises(RunCancelled):
            await token.sleep(5)
        return loop.time() - started

    assert asyncio.run(scenario()) < 1


def test_uncancelled_sleep_returns_normally():
    async def scenario():
        token = CancellationToken()
        await token.sleep(0.01)
        await token.sleep(0)
        return token.cancelled

    assert asyncio.run(scenario()) is False
