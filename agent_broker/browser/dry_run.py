"""In-memory driver that rehearses a run without a browser."""
from __future__ import annotations

from typing import Any, Dict, List, Tuple

from agent_broker.browser.base import FormDriver, NeedsLoginError, PageState, looks_like_login


class DryRunDriver(FormDriver):
    """
    Records every call instead of touching a page.

    Used when AGENT_DRIVER=dry_run to rehearse a plan end to end; `operations`
    holds what a real page would have received. Login-looking URLs still stop
    the run so rehearsals surface the same blocking events.
    """

    def __init__(self, title: str = "Dry run") -> None:
        self.title = title
        self.operations: List[Tuple[str, Dict[str, Any]]] = []
        self.values: Dict[str, str] = {}
        self._url = "about:blank"
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True
        self.operations.append(("start", {}))

    async def open(self, url: str) -> PageState:
        self._url = url
        self.operations.append(("open", {"url": url}))
        state = PageState(url=url, title=self.title)
        if looks_like_login(state):
            raise NeedsLoginError(state)
        return state

    async def clear(self, selector: str) -> None:
        self.values[selector] = ""
        self.operations.append(("clear", {"selector": selector}))

    async def type_char(self, selector: str, char: str) -> None:
        self.values[selector] = self.values.get(selector, "") + char

    async def upload(self, selector: str, files: List[str]) -> int:
        self.operations.append(("upload", {"selector": selector, "files": list(files)}))
        return len(files)

    async def click(self, selector: str) -> PageState:
        self.operations.append(("click", {"selector": selector}))
        return PageState(url=self._url, title=self.title)

    async def state(self) -> PageState:
        return PageState(url=self._url, title=self.title)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.operations.append(("close", {}))
