"""
Per-session action rate limiting.

Each session carries its own RateWindow; the limiter only reads and updates
it. Callers serialize access (the session manager holds its lock).
"""
import time
from typing import Callable

from agent_broker.core.errors import RateLimitedError
from agent_broker.core.models import RateWindow

RATE_LIMIT_WINDOW = 60  # seconds


class SlidingWindowRateLimiter:
    """Counts actions in the trailing window and resets it lazily."""

    def __init__(
        self,
        max_actions_per_minute: int,
        window_seconds: int = RATE_LIMIT_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        self.max_actions = max_actions_per_minute
        self.window_seconds = window_seconds
        self._clock = clock

    def new_window(self) -> RateWindow:
        return RateWindow(window_start=self._clock(), count=0)

    def check(self, window: RateWindow) -> int:
        """
        Record one action against `window`.

        Returns:
            Remaining actions in the current window.

        Raises:
            RateLimitedError: budget spent; the action is not counted.
        """
        current_time = self._clock()

        # Reset window if it has expired
        if current_time - window.window_start >= self.window_seconds:
            window.window_start = current_time
            window.count = 0

        if window.count >= self.max_actions:
            reset_after = int(self.window_seconds - (current_time - window.window_start)) + 1
            raise RateLimitedError(self.max_actions, retry_after=reset_after)

        window.count += 1
        return self.max_actions - window.count

    def remaining(self, window: RateWindow) -> int:
        if self._clock() - window.window_start >= self.window_seconds:
            return self.max_actions
        return max(0, self.max_actions - window.count)
