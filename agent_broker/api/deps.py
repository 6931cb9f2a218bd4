"""FastAPI dependencies for broker services and caller identity."""
from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from agent_broker.container import BrokerContainer, BrokerServices
from agent_broker.core.errors import AgentDisabledError, UnauthenticatedError

# Bearer token security
security = HTTPBearer(auto_error=False)


def get_container(request: Request) -> BrokerContainer:
    return request.app.state.container


def require_enabled(container: BrokerContainer = Depends(get_container)) -> BrokerContainer:
    """Reject every call with AGENT_DISABLED unless AGENT_MODE=1."""
    if not container.settings.enabled:
        raise AgentDisabledError()
    return container


async def get_services(container: BrokerContainer = Depends(require_enabled)) -> BrokerServices:
    return await container.ensure_started()


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> str:
    """
    Resolve the calling user's id.

    Authentication happens upstream; the broker trusts:
    - Bearer token: Authorization: Bearer <user id>
    - Header: X-User-Id: <user id>
    """
    if credentials and credentials.credentials and credentials.credentials.strip():
        return credentials.credentials.strip()
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    raise UnauthenticatedError()
