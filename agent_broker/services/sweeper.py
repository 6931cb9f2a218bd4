"""
Session Sweeper

Background loop that evicts expired sessions (and finished runs whose stream
has closed) every AGENT_SWEEP_INTERVAL_SEC seconds.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from agent_broker.core.sessions import SessionManager

logger = logging.getLogger(__name__)


class SessionSweeper:
    def __init__(self, session_manager: SessionManager, interval_seconds: float = 30):
        self.sessions = session_manager
        self.interval = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._status: Dict[str, Any] = {"state": "idle", "removed_total": 0}

    def get_status(self) -> Dict[str, Any]:
        return dict(self._status)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        self._status["state"] = "running"
        logger.info("Session sweeper started (every %ss)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._status["state"] = "stopped"
        logger.info("Session sweeper stopped")

    async def sweep_once(self) -> int:
        removed = await self.sessions.clear_expired()
        self._status["last_sweep"] = datetime.now(timezone.utc).isoformat()
        self._status["removed_total"] += len(removed)
        if removed:
            logger.info("Swept %d sessions", len(removed))
        return len(removed)

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.exception("Session sweep error: %s", exc)
                self._status.update({"state": "error", "error": str(exc)})
