from agent_broker.sdk.client import AgentClient, BrokerClientError, parse_sse

__all__ = ["AgentClient", "BrokerClientError", "parse_sse"]
