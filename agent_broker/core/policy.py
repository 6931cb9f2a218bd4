"""
Security Policy

Domain allowlist, same-origin navigation, typing cadence and action budget.
Loaded once at startup from a JSON file and read-only afterwards.
"""
from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from agent_broker.core.errors import ConfigError, InvalidRequestError, PolicyViolationError
from agent_broker.core.models import AgentAction

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}


def _normalize_domain_values(values: Any) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        return ()
    normalized = []
    seen = set()
    for value in values:
        host = str(value or "").strip().lower()
        if not host or host in seen:
            continue
        normalized.append(host)
        seen.add(host)
    return tuple(normalized)


def host_matches(pattern: str, host: str) -> bool:
    pattern = (pattern or "").strip().lower()
    host = (host or "").strip().lower()
    if not pattern or not host:
        return False
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return host.endswith(suffix)
    return host == pattern


def parse_url(url: str) -> Tuple[str, str]:
    """Return (normalized url, lower-cased host) or raise InvalidRequestError."""
    try:
        parsed = urlparse((url or "").strip())
        host = parsed.hostname or ""
    except ValueError:
        raise InvalidRequestError("invalid URL supplied", field="url")
    if parsed.scheme not in ALLOWED_SCHEMES or not host:
        raise InvalidRequestError("URL must be absolute http(s)", field="url")
    normalized = urlunparse(parsed._replace(netloc=parsed.netloc.lower(), path=parsed.path or "/"))
    return normalized, host.lower()


@dataclass(frozen=True)
class PolicyConfig:
    """
    Process-wide policy.

    JSON shape:
        {"allowDomains": ["poshmark.com"],
         "typing": {"minDelayMs": 40, "maxDelayMs": 120},
         "rateLimits": {"maxActionsPerMinute": 30},
         "navigation": {"sameOriginOnly": true}}
    """
    allow_domains: Tuple[str, ...]
    typing_min_delay_ms: int = 40
    typing_max_delay_ms: int = 120
    max_actions_per_minute: int = 30
    same_origin_only: bool = True

    def __post_init__(self):
        if not self.allow_domains:
            raise ConfigError("allowDomains", "policy must include at least one allowed domain")
        if self.typing_min_delay_ms < 0 or self.typing_max_delay_ms < 0:
            raise ConfigError("typing", "delays must be non-negative")
        if self.typing_min_delay_ms > self.typing_max_delay_ms:
            raise ConfigError("typing", "minDelayMs must be <= maxDelayMs")
        if self.max_actions_per_minute < 1:
            raise ConfigError("rateLimits.maxActionsPerMinute", "must be at least 1")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PolicyConfig":
        if not isinstance(raw, dict):
            raise ConfigError("policy", "policy document must be a JSON object")
        typing = raw.get("typing") or {}
        rate_limits = raw.get("rateLimits") or {}
        navigation = raw.get("navigation") or {}
        try:
            return cls(
                allow_domains=_normalize_domain_values(raw.get("allowDomains")),
                typing_min_delay_ms=int(typing.get("minDelayMs", 40)),
                typing_max_delay_ms=int(typing.get("maxDelayMs", 120)),
                max_actions_per_minute=int(rate_limits.get("maxActionsPerMinute", 30)),
                same_origin_only=bool(navigation.get("sameOriginOnly", True)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError("policy", f"invalid value: {exc}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowDomains": list(self.allow_domains),
            "typing": {"minDelayMs": self.typing_min_delay_ms, "maxDelayMs": self.typing_max_delay_ms},
            "rateLimits": {"maxActionsPerMinute": self.max_actions_per_minute},
            "navigation": {"sameOriginOnly": self.same_origin_only},
        }


def load_policy(path: str) -> PolicyConfig:
    """Load and validate the policy file."""
    policy_path = Path(path)
    try:
        contents = policy_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError("policy_path", f"cannot read {policy_path}: {exc.strerror or exc}")
    try:
        parsed = json.loads(contents)
    except json.JSONDecodeError as exc:
        raise ConfigError("policy_path", f"{policy_path} is not valid JSON: {exc.msg}")
    policy = PolicyConfig.from_dict(parsed)
    logger.info("Loaded policy from %s (%d allowed domains)", policy_path, len(policy.allow_domains))
    return policy


class PolicyEngine:
    """Pure policy evaluation over a read-only PolicyConfig."""

    def __init__(self, config: PolicyConfig, rng: Optional[random.Random] = None):
        self.config = config
        self._rng = rng or random.Random()

    @property
    def max_actions_per_minute(self) -> int:
        return self.config.max_actions_per_minute

    def is_domain_allowed(self, host: str) -> bool:
        return any(host_matches(pattern, host) for pattern in self.config.allow_domains)

    def check_domain(self, host: str) -> str:
        normalized = (host or "").strip().lower()
        if not self.is_domain_allowed(normalized):
            raise PolicyViolationError(f"blocked_domain:{normalized}", host=normalized)
        return normalized

    def check_navigation(self, session_domain: str, url: str) -> str:
        """Validate a navigation target for a session; returns the normalized URL."""
        normalized, host = parse_url(url)
        self.check_domain(host)
        if self.config.same_origin_only and host != (session_domain or "").lower():
            raise PolicyViolationError(f"cross_origin_navigation:{host}", host=host)
        return normalized

    def check_action(self, domain: str, permitted: Iterable[AgentAction], action: AgentAction) -> None:
        if action not in set(permitted):
            raise PolicyViolationError(f"action_not_permitted:{action.value}")
        self.check_domain(domain)

    def typing_delay(self) -> float:
        """Seconds to wait before the next keystroke, uniform over the configured range."""
        low = self.config.typing_min_delay_ms
        high = self.config.typing_max_delay_ms
        return self._rng.uniform(low, high) / 1000.0

    def describe(self) -> Dict[str, Any]:
        return self.config.to_dict()
