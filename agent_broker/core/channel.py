"""Bounded single-consumer channel with explicit close."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Generic, TypeVar

T = TypeVar("T")


class EventChannel(Generic[T]):
    """
    Per-session event pipe between one producer and one consumer.

    `put` applies backpressure when the buffer is full and is a no-op once the
    channel is closed. Iteration yields items in put order; after `close()`
    the consumer still drains whatever was buffered, then stops.
    """

    def __init__(self, capacity: int = 256) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, item: T) -> bool:
        if self._closed:
            return False
        if not self._queue.full():
            self._queue.put_nowait(item)
            return True

        # Wait for room, but give up as soon as the channel closes.
        put_task = asyncio.ensure_future(self._queue.put(item))
        closed_task = asyncio.ensure_future(self._closed_event.wait())
        try:
            done, _ = await asyncio.wait({put_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (put_task, closed_task):
                if not task.done():
                    task.cancel()
        return put_task in done

    def put_nowait(self, item: T) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()

    async def get(self) -> T:
        """Next item, or raise StopAsyncIteration once closed and drained."""
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._closed:
                raise StopAsyncIteration
            get_task = asyncio.ensure_future(self._queue.get())
            closed_task = asyncio.ensure_future(self._closed_event.wait())
            try:
                await asyncio.wait({get_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (get_task, closed_task):
                    if not task.done():
                        task.cancel()
            if get_task.done() and not get_task.cancelled():
                return get_task.result()

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        return await self.get()
