"""
Playwright Form Driver

Drives one Chromium page for one session. Either launches a local browser or
attaches to a running Chrome over CDP (AGENT_CHROME_WS_ENDPOINT).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional
from urllib.parse import unquote, urlparse

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from agent_broker.browser.base import (
    ChallengeDetectedError,
    DriverError,
    FormDriver,
    NeedsLoginError,
    PageState,
    looks_like_login,
)

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 120_000
SELECTOR_TIMEOUT_MS = 30_000

CHALLENGE_SELECTORS = (
    "iframe[src*='recaptcha']",
    "iframe[src*='hcaptcha']",
    "iframe[src*='challenges.cloudflare.com']",
    "#challenge-form",
)


def normalize_upload_paths(files: List[str], base_dir: Optional[Path] = None) -> List[str]:
    """Turn file:// URLs and relative paths into absolute filesystem paths."""
    base = base_dir or Path.cwd()
    normalized = []
    for file in files:
        if file.startswith("file://"):
            normalized.append(unquote(urlparse(file).path))
            continue
        path = Path(file)
        normalized.append(str(path if path.is_absolute() else (base / path).resolve()))
    return normalized


class PlaywrightFormDriver(FormDriver):
    """Real browser page, restricted to the session's origin when configured."""

    def __init__(
        self,
        domain: str,
        same_origin_only: bool = True,
        headless: bool = False,
        chrome_endpoint: Optional[str] = None,
    ):
        self.domain = domain.lower()
        self.same_origin_only = same_origin_only
        self.headless = headless
        self.chrome_endpoint = chrome_endpoint
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None

    async def start(self) -> None:
        if self._page is not None:
            return
        self._playwright = await async_playwright().start()
        try:
            if self.chrome_endpoint:
                self._browser = await self._playwright.chromium.connect_over_cdp(self.chrome_endpoint)
            else:
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=["--no-sandbox", "--disable-setuid-sandbox"],
                )
            context = await self._browser.new_context()
            self._page = await context.new_page()
        except PlaywrightError as exc:
            await self.close()
            raise DriverError("BROWSER_UNAVAILABLE", f"unable to start browser: {exc}")

        if self.same_origin_only:
            await self._page.route("**/*", self._guard_origin)

    async def _guard_origin(self, route: Route) -> None:
        host = (urlparse(route.request.url).hostname or "").lower()
        if host and host != self.domain:
            logger.debug("Blocked cross-origin request to %s", host)
            await route.abort("blockedbyclient")
        else:
            await route.continue_()

    def _require_page(self) -> Page:
        if self._page is None:
            raise DriverError("PAGE_NOT_STARTED", "driver.start() was not called")
        return self._page

    async def _check_blockers(self) -> PageState:
        page = self._require_page()
        current = await self.state()
        for selector in CHALLENGE_SELECTORS:
            if await page.query_selector(selector):
                raise ChallengeDetectedError(current)
        if looks_like_login(current) and await page.query_selector("input[type='password']"):
            raise NeedsLoginError(current)
        return current

    async def open(self, url: str) -> PageState:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            raise DriverError("NAVIGATION_TIMEOUT", f"timed out opening {url}")
        except PlaywrightError as exc:
            raise DriverError("NAVIGATION_FAILED", str(exc))
        return await self._check_blockers()

    async def _field(self, selector: str):
        page = self._require_page()
        try:
            handle = await page.wait_for_selector(selector, timeout=SELECTOR_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            handle = None
        if handle is None:
            raise DriverError("BAD_SELECTOR", "selector not found", selector=selector)
        return handle

    async def clear(self, selector: str) -> None:
        field = await self._field(selector)
        await field.click(click_count=3)
        await field.press("Backspace")

    async def type_char(self, selector: str, char: str) -> None:
        field = await self._field(selector)
        await field.type(char)

    async def upload(self, selector: str, files: List[str]) -> int:
        field = await self._field(selector)
        paths = normalize_upload_paths(files)
        try:
            await field.set_input_files(paths)
        except PlaywrightError as exc:
            raise DriverError("UPLOAD_FAILED", str(exc), selector=selector)
        return len(paths)

    async def click(self, selector: str) -> PageState:
        page = self._require_page()
        element = await self._field(selector)
        await element.click(delay=50)
        try:
            await page.wait_for_load_state("networkidle", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            logger.debug("No navigation settled after clicking %s", selector)
        return await self._check_blockers()

    async def state(self) -> PageState:
        page = self._require_page()
        return PageState(url=page.url, title=await page.title())

    async def close(self) -> None:
        page, browser, playwright = self._page, self._browser, self._playwright
        self._page = self._browser = self._playwright = None
        try:
            if page is not None and not page.is_closed():
                await page.close()
            if browser is not None and not self.chrome_endpoint:
                await browser.close()
        except PlaywrightError as exc:
            logger.warning("Error closing browser page: %s", exc)
        finally:
            if playwright is not None:
                await playwright.stop()
