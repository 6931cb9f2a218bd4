"""Cooperative cancellation for automation runs."""
from __future__ import annotations

import asyncio
from typing import Optional


class RunCancelled(Exception):
    """Raised at a phase boundary once the run's token has been cancelled."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CancellationToken:
    """
    One-way cancellation flag checked by the executor between phases.

    Fired by the expiry sweep, by an explicit cancel, or by the stream
    consumer disconnecting. The first reason wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "cancelled")

    async def wait(self) -> str:
        await self._event.wait()
        return self._reason or "cancelled"

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early (and raising) on cancellation."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
