"""
Broker Configuration

Process-wide settings for the Agent Session Broker, read once from the
environment:
- Master enable flag (AGENT_MODE)
- Token signing secret and lifetimes
- Policy file location
- Sweep cadence, driver selection, listen address
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Optional

from agent_broker.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 120
DEFAULT_SWEEP_INTERVAL_SECONDS = 30
SUPPORTED_DRIVERS = {"dry_run", "playwright"}


def _env_bool(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(name, f"expected an integer, got '{raw}'")
    if value < minimum:
        raise ConfigError(name, f"must be >= {minimum}")
    return value


@dataclass(frozen=True)
class BrokerSettings:
    """
    Settings shared by every component.

    `enabled` mirrors AGENT_MODE=1. An empty `jws_secret` is allowed here so the
    process can start and answer CONFIG_ERROR instead of crashing.
    """
    enabled: bool = False
    jws_secret: str = ""
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    token_max_age_seconds: Optional[int] = None  # None = same as TTL
    policy_path: str = "policy.json"
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    driver: str = "dry_run"
    chrome_endpoint: Optional[str] = None
    headless: bool = False
    host: str = "127.0.0.1"
    port: int = 8765
    stream_retry_ms: int = 5000
    channel_capacity: int = 256
    consent_wait_seconds: int = 0

    def __post_init__(self):
        if self.session_ttl_seconds <= 0:
            raise ConfigError("session_ttl_seconds", "must be positive")
        if self.driver not in SUPPORTED_DRIVERS:
            raise ConfigError("driver", f"must be one of {sorted(SUPPORTED_DRIVERS)}")
        if self.channel_capacity <= 0:
            raise ConfigError("channel_capacity", "must be positive")

    @property
    def max_token_age(self) -> int:
        return self.token_max_age_seconds or self.session_ttl_seconds

    @property
    def has_secret(self) -> bool:
        return bool(self.jws_secret)

    def with_overrides(self, **changes) -> "BrokerSettings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "BrokerSettings":
        """Create settings from environment variables."""
        ttl = _env_int("AGENT_SESSION_TTL", DEFAULT_SESSION_TTL_SECONDS, minimum=1)
        max_age = os.getenv("AGENT_TOKEN_MAX_AGE")
        settings = cls(
            enabled=os.getenv("AGENT_MODE", "0").strip() == "1",
            jws_secret=os.getenv("AGENT_JWS_SECRET", ""),
            session_ttl_seconds=ttl,
            token_max_age_seconds=_env_int("AGENT_TOKEN_MAX_AGE", ttl, minimum=1) if max_age else None,
            policy_path=os.getenv("AGENT_POLICY_PATH", "policy.json"),
            sweep_interval_seconds=_env_int("AGENT_SWEEP_INTERVAL_SEC", DEFAULT_SWEEP_INTERVAL_SECONDS, minimum=1),
            driver=os.getenv("AGENT_DRIVER", "dry_run").strip().lower(),
            chrome_endpoint=os.getenv("AGENT_CHROME_WS_ENDPOINT") or None,
            headless=_env_bool("AGENT_HEADLESS", False),
            host=os.getenv("AGENT_HOST", "127.0.0.1"),
            port=_env_int("AGENT_PORT", 8765, minimum=1),
            stream_retry_ms=_env_int("AGENT_STREAM_RETRY_MS", 5000),
            channel_capacity=_env_int("AGENT_CHANNEL_CAPACITY", 256, minimum=1),
            consent_wait_seconds=_env_int("AGENT_CONSENT_WAIT_SEC", 0),
        )
        if not settings.enabled:
            logger.info("Agent mode disabled (set AGENT_MODE=1 to enable)")
        if not settings.has_secret:
            logger.warning("AGENT_JWS_SECRET is not set; token operations will fail with CONFIG_ERROR")
        return settings
