"""Run the broker with uvicorn on AGENT_HOST:AGENT_PORT."""
import uvicorn

from agent_broker.app import create_app
from agent_broker.core.config import BrokerSettings


def main() -> None:
    settings = BrokerSettings.from_env()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
