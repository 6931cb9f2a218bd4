"""
FastAPI application factory for the Agent Session Broker.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from agent_broker import __version__
from agent_broker.api import agent_router, consent_router, ops_router
from agent_broker.container import BrokerContainer
from agent_broker.core.config import BrokerSettings
from agent_broker.core.errors import BrokerError, RateLimitedError
from agent_broker.core.logging import log_error, log_request
from agent_broker.core.metrics import record_error, record_request

logger = logging.getLogger(__name__)

LOCAL_ORIGINS = [
    "http://localhost",
    "http://127.0.0.1",
]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        # Identity headers carry user ids, never tokens, so they are safe to log.
        client_id = request.headers.get("X-User-Id", request.client.host if request.client else "unknown")

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id,
            )
            record_request(request.method, request.url.path, response.status_code, duration_ms)

            if response.status_code >= 400:
                record_error(f"http_{response.status_code}", request.url.path)

            return response
        except Exception as e:
            record_error("exception", request.url.path)
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


async def broker_exception_handler(request: Request, exc: BrokerError):
    """Render every BrokerError as {"error", "message", ...} with its mapped status."""
    status_code = exc.status_code
    context = {"path": str(request.url.path), "method": request.method, "code": exc.code.value}
    if status_code >= 500:
        log_error(exc.code.value, exc.message, {**context, **exc.context})
    else:
        logger.info("%s %s -> %s (%s)", request.method, request.url.path, status_code, exc.code.value)

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception):
    error_id = uuid.uuid4().hex[:12]
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": str(request.url.path), "method": request.method, "error_id": error_id},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred.",
        },
    )


def create_app(
    settings: Optional[BrokerSettings] = None,
    container: Optional[BrokerContainer] = None,
) -> FastAPI:
    """
    Build the broker application.

    Pass `container` to inject services (tests do this with an in-memory
    policy and a dry-run driver); otherwise one is built from `settings`, or
    from the environment when neither is given.
    """
    if container is None:
        container = BrokerContainer(settings or BrokerSettings.from_env())

    app = FastAPI(
        title="Agent Session Broker",
        description="""
    Local control plane for human-consented browser automation.

    ## Flow
    1. `POST /start` mints a capability token and opens a pending session
    2. The local consent surface allows or denies it (`/consent`)
    3. `GET /events/{session_id}` streams the automation run as server-sent events

    ## Identity
    Callers are authenticated upstream and identify themselves with
    `Authorization: Bearer <user id>` or `X-User-Id`.

    ## Switches
    Set `AGENT_MODE=1` to enable and `AGENT_JWS_SECRET` to sign tokens.
    """,
        version=__version__,
    )
    app.state.container = container

    app.include_router(agent_router)
    app.include_router(consent_router)
    app.include_router(ops_router)

    app.add_exception_handler(BrokerError, broker_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(RequestLoggingMiddleware)
    # Loopback only: the broker is never meant to be reachable from other hosts.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=LOCAL_ORIGINS,
        allow_origin_regex=r"^http://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Load the policy and start the expiry sweep."""
        await container.start()
        logger.info(
            "Agent Session Broker %s ready (agent mode %s)",
            __version__,
            "enabled" if container.settings.enabled else "disabled",
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the sweep and cancel in-flight runs."""
        await container.stop()

    return app
