import sys
import time
from pathlib import Path
from typing import List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from agent_broker.app import create_app
from agent_broker.container import BrokerContainer
from agent_broker.core.config import BrokerSettings
from agent_broker.core.metrics import reset_metrics
from agent_broker.core.policy import PolicyConfig, PolicyEngine

SECRET = "test-signing-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: Optional[float] = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_policy_config(
    allow_domains=("example.com",),
    max_actions_per_minute: int = 30,
    same_origin_only: bool = True,
) -> PolicyConfig:
    return PolicyConfig(
        allow_domains=tuple(allow_domains),
        typing_min_delay_ms=0,
        typing_max_delay_ms=0,
        max_actions_per_minute=max_actions_per_minute,
        same_origin_only=same_origin_only,
    )


def make_policy(**kwargs) -> PolicyEngine:
    return PolicyEngine(make_policy_config(**kwargs))


def make_settings(**overrides) -> BrokerSettings:
    values = {"enabled": True, "jws_secret": SECRET, "policy_path": "does-not-exist.json"}
    values.update(overrides)
    return BrokerSettings(**values)


def parse_sse_text(body: str) -> List[dict]:
    """Split a buffered SSE body into frames of {"event", "data", "retry"}."""
    frames = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        frame = {"event": None, "data": None, "retry": None}
        for line in block.split("\n"):
            name, _, value = line.partition(": ")
            frame[name] = value
        frames.append(frame)
    return frames


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def container():
    return BrokerContainer(make_settings(), policy=make_policy_config())


@pytest.fixture()
def app(container):
    return create_app(container=container)
