"""Operational endpoints: health and in-process metrics."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from agent_broker import __version__
from agent_broker.api.deps import get_container
from agent_broker.container import BrokerContainer
from agent_broker.core.errors import ConfigError
from agent_broker.core.metrics import get_metrics

router = APIRouter(tags=["System"])


@router.get("/health")
async def health(container: BrokerContainer = Depends(get_container)) -> Dict[str, Any]:
    """
    Health check endpoint.

    Always answers, even with AGENT_MODE off, so a supervisor can tell a
    disabled broker from a dead one.
    """
    settings = container.settings
    checks: Dict[str, Any] = {
        "agent_mode": "enabled" if settings.enabled else "disabled",
        "signing_secret": "configured" if settings.has_secret else "missing",
        "driver": settings.driver,
    }
    status = "healthy"
    try:
        services = container.services
    except ConfigError as exc:
        checks["policy"] = {"status": "error", "detail": exc.detail}
        status = "degraded"
    else:
        checks["policy"] = {"status": "ok", "allowDomains": len(services.policy.config.allow_domains)}
        checks["sessions"] = len(services.sessions)
        checks["active_runs"] = services.gateway.active_runs
        checks["consent_surfaces"] = services.consent.surface_count
        checks["sweeper"] = services.sweeper.get_status()
    if not settings.has_secret:
        status = "degraded"

    return {"status": status, "version": __version__, "checks": checks}


@router.get("/metrics")
async def metrics_endpoint() -> Dict[str, Any]:
    """Request, error, session and automation-run statistics."""
    return get_metrics()
