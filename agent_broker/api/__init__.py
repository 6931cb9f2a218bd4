from agent_broker.api.agent import router as agent_router
from agent_broker.api.consent import router as consent_router
from agent_broker.api.ops import router as ops_router

__all__ = ["agent_router", "consent_router", "ops_router"]
