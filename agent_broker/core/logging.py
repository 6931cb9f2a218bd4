"""
Structured logging for the Agent Session Broker.

Everything logs through the `agent_broker` logger tree. Records emitted while
an automation run is in flight carry that run's session id, so one session
can be followed across the executor, the driver and the stream gateway:

    2025-01-01 12:00:00 INFO agent_broker.services.executor [session=3f2c...] ...

Set USE_JSON_LOGS=true for one JSON object per line instead.
"""
import json
import logging
import os
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
USE_JSON_LOGS = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

NO_SESSION = "-"

_current_session: ContextVar[Optional[str]] = ContextVar("agent_broker_session", default=None)


def bind_session(session_id: str) -> Token:
    """Tag every record from the current task with `session_id` until unbound."""
    return _current_session.set(session_id)


def unbind_session(token: Token) -> None:
    _current_session.reset(token)


class SessionContextFilter(logging.Filter):
    """Stamps `session_id` on records that do not already name one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "session_id", None):
            fields = getattr(record, "extra_fields", None) or {}
            record.session_id = fields.get("session_id") or _current_session.get() or NO_SESSION
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        session_id = getattr(record, "session_id", NO_SESSION)
        if session_id != NO_SESSION:
            log_data["session_id"] = session_id
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        log_data.update(getattr(record, "extra_fields", None) or {})
        return json.dumps(log_data, default=str)


logger = logging.getLogger("agent_broker")
logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
logger.handlers.clear()

console_handler = logging.StreamHandler(sys.stdout)
console_handler.addFilter(SessionContextFilter())
if USE_JSON_LOGS:
    console_handler.setFormatter(JSONFormatter())
else:
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [session=%(session_id)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
logger.addHandler(console_handler)
logger.propagate = False


def _emit(level: int, message: str, extra_fields: Dict[str, Any], exc_info=None) -> None:
    logger.log(level, message, exc_info=exc_info, extra={"extra_fields": extra_fields})


def log_request(method: str, path: str, status_code: int, duration_ms: float, client_id: Optional[str] = None):
    """One line per HTTP request; `client_id` is the caller's user id, never a token."""
    fields: Dict[str, Any] = {
        "type": "http_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if client_id:
        fields["client_id"] = client_id
    _emit(logging.INFO, f"{method} {path} {status_code}", fields)


def log_session_event(event: str, session_id: str, **fields):
    """Log a session lifecycle transition. Never pass tokens here."""
    _emit(logging.INFO, f"session {event}", {
        "type": "session_event",
        "event": event,
        "session_id": session_id,
        **fields,
    })


def log_error(error_type: str, message: str, context: Optional[Dict[str, Any]] = None,
              exception: Optional[Exception] = None):
    _emit(logging.ERROR, message, {"type": "error", "error_type": error_type, **(context or {})},
          exc_info=exception)
