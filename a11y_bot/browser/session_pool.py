"""Browser pool that hands out one exclusive control session per tab."""

import asyncio
import logging
from typing import Optional

import httpx
from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

from a11y_bot.config import IGNORE_HTTPS_ERRORS
from a11y_bot.errors import SessionUnavailable


logger = logging.getLogger(__name__)


class SessionPool:
    """
    Owns the Playwright browser and the tab-to-session bookkeeping.

    Two modes:
    - Attach: connect to a running Chromium over its DevTools endpoint and
      drive tabs the user already has open.
    - Launch: start a local Chromium and open tabs on demand (CLI, CI).

    Tabs are addressed by numeric id, which is the tab's index across all
    contexts of the browser. A tab can be attached by at most one channel.
    """

    def __init__(
        self,
        cdp_endpoint: str = "",
        headless: bool = True,
        viewport_width: int = 1280,
        viewport_height: int = 720
    ):
        self.cdp_endpoint = cdp_endpoint.rstrip("/")
        self.headless = headless
        self.viewport = {"width": viewport_width, "height": viewport_height}

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._attached: set[int] = set()
        self._lock = asyncio.Lock()
        self._started = False

    async def start(self):
        """Initialize Playwright and launch or connect to the browser."""
        if self._started:
            return

        self._playwright = await async_playwright().start()
        try:
            if self.cdp_endpoint:
                logger.info(f"Connecting to browser at {self.cdp_endpoint}")
                self._browser = await self._playwright.chromium.connect_over_cdp(self.cdp_endpoint)
            else:
                self._browser = await self._playwright.chromium.launch(headless=self.headless)
        except Exception as e:
            await self._playwright.stop()
            self._playwright = None
            raise SessionUnavailable(f"Could not reach browser: {e}") from e
        self._started = True

    async def stop(self):
        """Close (or disconnect from) the browser and stop Playwright."""
        if not self._started:
            return

        if self._browser:
            # For connect_over_cdp this only drops the connection, user tabs stay open
            await self._browser.close()
            self._browser = None
            self._context = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        self._attached.clear()
        self._started = False

    @property
    def browser(self) -> Optional[Browser]:
        return self._browser

    def pages(self) -> list[Page]:
        """All open tabs, in tab-id order."""
        if not self._browser:
            return []
        return [page for context in self._browser.contexts for page in context.pages]

    async def open_tab(self, url: str) -> int:
        """Open a new tab on url and return its tab id."""
        if not self._started:
            raise RuntimeError("SessionPool not started. Call start() first.")

        if self._context is None:
            if self.cdp_endpoint and self._browser.contexts:
                self._context = self._browser.contexts[0]
            else:
                self._context = await self._browser.new_context(
                    viewport=self.viewport,
                    ignore_https_errors=IGNORE_HTTPS_ERRORS,
                )

        page = await self._context.new_page()
        await page.goto(url, wait_until="load")
        tab_id = self.pages().index(page)
        logger.info(f"Opened tab {tab_id}: {url}")
        return tab_id

    async def list_targets(self) -> list[dict]:
        """
        Describe the open tabs.

        In attach mode the DevTools target list (``/json/list``) is merged in
        so callers can match tab ids against what the browser reports.
        """
        targets = []
        for tab_id, page in enumerate(self.pages()):
            targets.append({"tab_id": tab_id, "url": page.url, "title": await page.title()})

        if self.cdp_endpoint:
            devtools_targets = await self._fetch_devtools_targets()
            by_url: dict[str, list[dict]] = {}
            for target in devtools_targets:
                if target.get("type") == "page":
                    by_url.setdefault(target.get("url", ""), []).append(target)
            for entry in targets:
                matches = by_url.get(entry["url"])
                if matches:
                    entry["target_id"] = matches.pop(0).get("id")

        return targets

    async def _fetch_devtools_targets(self) -> list[dict]:
        http_endpoint = self.cdp_endpoint.replace("ws://", "http://").replace("wss://", "https://")
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{http_endpoint}/json/list")
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Could not list DevTools targets at {http_endpoint}: {e}")
            return []

    async def acquire(self, tab_id: int) -> Page:
        """Reserve a tab for one channel. A second reservation fails."""
        async with self._lock:
            if not self._started:
                raise SessionUnavailable("Browser not started")
            if tab_id in self._attached:
                raise SessionUnavailable(f"Tab {tab_id} is already attached")
            pages = self.pages()
            if not 0 <= tab_id < len(pages):
                raise SessionUnavailable(f"No tab with id {tab_id} ({len(pages)} open)")
            page = pages[tab_id]
            if page.is_closed():
                raise SessionUnavailable(f"Tab {tab_id} is closed")
            self._attached.add(tab_id)
            return page

    async def release(self, tab_id: int) -> None:
        async with self._lock:
            self._attached.discard(tab_id)
