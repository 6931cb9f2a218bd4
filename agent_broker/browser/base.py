"""Driver contract between the automation executor and a browser page."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

LOGIN_URL_PATTERNS = (
    "login",
    "signin",
    "sign-in",
    "sign_in",
    "auth",
    "sso",
    "oauth",
)

LOGIN_TITLE_PATTERNS = ("log in", "login", "sign in", "signin")


@dataclass(frozen=True)
class PageState:
    url: str
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "title": self.title}


class DriverError(Exception):
    """Unrecoverable page failure (bad selector, navigation timeout, crash)."""

    def __init__(self, code: str, message: str, selector: Optional[str] = None):
        self.code = code
        self.selector = selector
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": str(self)}
        if self.selector:
            payload["selector"] = self.selector
        return payload


class NeedsLoginError(Exception):
    """The target site wants credentials. The executor stops instead of guessing."""

    def __init__(self, state: PageState):
        self.state = state
        super().__init__(f"login required at {state.url}")


class ChallengeDetectedError(Exception):
    """A captcha or bot challenge is on the page. Never solved automatically."""

    def __init__(self, state: PageState, kind: str = "captcha"):
        self.state = state
        self.kind = kind
        super().__init__(f"{kind} challenge at {state.url}")


def looks_like_login(state: PageState) -> bool:
    url_lower = state.url.lower()
    title_lower = state.title.lower()
    if any(pattern in url_lower for pattern in LOGIN_URL_PATTERNS):
        return True
    return any(pattern in title_lower for pattern in LOGIN_TITLE_PATTERNS)


class FormDriver(ABC):
    """
    One browser page scoped to one session.

    Implementations raise NeedsLoginError / ChallengeDetectedError when the
    page blocks progress, and DriverError for anything unrecoverable.
    """

    async def start(self) -> None:
        """Acquire the page. Called once before the first action."""

    @abstractmethod
    async def open(self, url: str) -> PageState:
        """Navigate to `url` and wait for the form to load."""

    @abstractmethod
    async def clear(self, selector: str) -> None:
        """Focus a field and clear its current value."""

    @abstractmethod
    async def type_char(self, selector: str, char: str) -> None:
        """Type a single character into a focused field."""

    @abstractmethod
    async def upload(self, selector: str, files: List[str]) -> int:
        """Attach files to a file input; returns how many were attached."""

    @abstractmethod
    async def click(self, selector: str) -> PageState:
        """Click an element and wait for any resulting navigation."""

    @abstractmethod
    async def state(self) -> PageState:
        """Current URL and title."""

    async def close(self) -> None:
        """Release the page. Safe to call more than once."""
