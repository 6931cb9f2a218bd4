"""Browser drivers the automation executor can drive."""
from agent_broker.browser.base import (
    ChallengeDetectedError,
    DriverError,
    FormDriver,
    NeedsLoginError,
    PageState,
)
from agent_broker.browser.dry_run import DryRunDriver

__all__ = [
    "ChallengeDetectedError",
    "DriverError",
    "DryRunDriver",
    "FormDriver",
    "NeedsLoginError",
    "PageState",
]
