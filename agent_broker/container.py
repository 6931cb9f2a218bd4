"""
Service container.

Every component is built here from one BrokerSettings and handed to the HTTP
layer through `app.state`; nothing else holds process-wide state. Components
that depend on the policy file are built on first use so a broken policy
leaves the broker answering CONFIG_ERROR instead of refusing to start.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from agent_broker.browser.base import FormDriver
from agent_broker.browser.dry_run import DryRunDriver
from agent_broker.core.config import BrokerSettings
from agent_broker.core.errors import ConfigError
from agent_broker.core.logging import log_error
from agent_broker.core.models import Session
from agent_broker.core.policy import PolicyConfig, PolicyEngine, load_policy
from agent_broker.core.sessions import SessionManager
from agent_broker.core.tokens import TokenService
from agent_broker.services.consent import ConsentBroker
from agent_broker.services.executor import AutomationExecutor, DriverFactory
from agent_broker.services.streaming import EventStreamGateway
from agent_broker.services.sweeper import SessionSweeper

logger = logging.getLogger(__name__)


@dataclass
class BrokerServices:
    policy: PolicyEngine
    sessions: SessionManager
    executor: AutomationExecutor
    gateway: EventStreamGateway
    consent: ConsentBroker
    sweeper: SessionSweeper


def default_driver_factory(settings: BrokerSettings, policy: PolicyEngine) -> DriverFactory:
    """Pick the page driver named by AGENT_DRIVER."""
    if settings.driver == "playwright":
        # Imported here so the browser extra stays optional.
        from agent_broker.browser.playwright_driver import PlaywrightFormDriver

        def playwright_factory(session: Session) -> FormDriver:
            return PlaywrightFormDriver(
                domain=session.domain,
                same_origin_only=policy.config.same_origin_only,
                headless=settings.headless,
                chrome_endpoint=settings.chrome_endpoint,
            )

        return playwright_factory

    def dry_run_factory(session: Session) -> FormDriver:
        return DryRunDriver()

    return dry_run_factory


class BrokerContainer:
    def __init__(
        self,
        settings: BrokerSettings,
        policy: Optional[PolicyConfig] = None,
        driver_factory: Optional[DriverFactory] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.clock = clock
        self.tokens = TokenService(
            settings.jws_secret,
            ttl_seconds=settings.session_ttl_seconds,
            max_age_seconds=settings.max_token_age,
            clock=clock,
        )
        self._policy_config = policy
        self._driver_factory = driver_factory
        self._services: Optional[BrokerServices] = None
        self._config_error: Optional[ConfigError] = None
        self._stopped = False

    @property
    def config_error(self) -> Optional[ConfigError]:
        return self._config_error

    @property
    def ready(self) -> bool:
        return self._services is not None

    @property
    def services(self) -> BrokerServices:
        """Policy-backed services; raises ConfigError while the policy is unusable."""
        if self._services is None:
            self._services = self._build()
        return self._services

    def _build(self) -> BrokerServices:
        try:
            config = self._policy_config or load_policy(self.settings.policy_path)
        except ConfigError as exc:
            if self._config_error is None:
                log_error("policy_load_failed", exc.message, {"detail": exc.detail})
            self._config_error = exc
            raise
        self._config_error = None

        policy = PolicyEngine(config)
        sessions = SessionManager(
            policy,
            channel_capacity=self.settings.channel_capacity,
            clock=self.clock,
        )
        driver_factory = self._driver_factory or default_driver_factory(self.settings, policy)
        executor = AutomationExecutor(policy, sessions, driver_factory)
        gateway = EventStreamGateway(
            sessions,
            executor,
            retry_ms=self.settings.stream_retry_ms,
            consent_wait_seconds=self.settings.consent_wait_seconds,
        )
        logger.info("Broker services ready (driver=%s)", self.settings.driver)
        return BrokerServices(
            policy=policy,
            sessions=sessions,
            executor=executor,
            gateway=gateway,
            consent=ConsentBroker(sessions),
            sweeper=SessionSweeper(sessions, self.settings.sweep_interval_seconds),
        )

    async def ensure_started(self) -> BrokerServices:
        """
        Services with the expiry sweep running.

        A policy that only becomes loadable after startup is picked up here, on
        the first request that needs it, and the sweep starts with it.
        """
        services = self.services
        if not self._stopped:
            await services.sweeper.start()
        return services

    async def start(self) -> None:
        self._stopped = False
        try:
            await self.ensure_started()
        except ConfigError:
            logger.error("Broker started without a usable policy; requests will fail with CONFIG_ERROR")

    async def stop(self) -> None:
        self._stopped = True
        if self._services is None:
            return
        await self._services.sweeper.stop()
        await self._services.gateway.shutdown()
        self._services.consent.close()
