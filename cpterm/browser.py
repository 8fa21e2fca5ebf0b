"""Chromium driven through Playwright, with a scraper host on every tab."""

import logging
from contextlib import suppress
from pathlib import Path

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .config import BROWSER_PROFILE, HEADLESS, START_URL
from .dom import PageDom
from .scraper_host import ScraperHost
from .sessions import LocalSession

logger = logging.getLogger(__name__)


class BrowserDriver:
    def __init__(self, relay, *, profile_dir: str | Path = BROWSER_PROFILE, headless: bool = HEADLESS,
                 start_url: str | None = START_URL):
        self.relay = relay
        self.profile_dir = Path(profile_dir)
        self.headless = headless
        self.start_url = start_url
        self._playwright: Playwright | None = None
        self._context: BrowserContext | None = None
        self._hosts: dict[Page, ScraperHost] = {}
        self._sessions: dict[Page, LocalSession] = {}

    @property
    def tab_count(self) -> int:
        return len(self._hosts)

    async def start(self) -> None:
        """Launch a persistent Chromium profile so judge logins survive restarts."""
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        self._playwright = await async_playwright().start()
        self._context = await self._playwright.chromium.launch_persistent_context(
            str(self.profile_dir),
            headless=self.headless,
            no_viewport=True,
        )
        self._context.on("page", self._on_new_page)
        for page in list(self._context.pages):
            await self.attach(page)
        if self.start_url:
            page = self._context.pages[0] if self._context.pages else await self._context.new_page()
            await page.goto(self.start_url)
        logger.info("Browser started (profile %s, headless=%s)", self.profile_dir, self.headless)

    async def _on_new_page(self, page: Page) -> None:
        try:
            await self.attach(page)
        except PlaywrightError as exc:
            logger.warning("Could not attach to new tab %s: %s", page.url, exc)

    async def attach(self, page: Page) -> ScraperHost:
        if page in self._hosts:
            return self._hosts[page]
        dom = PageDom(page)
        await dom.install()
        session = LocalSession(self.relay, name=f"tab-{len(self._hosts) + 1}")
        host = ScraperHost(dom, session.post)
        session.attach(host.handle_message)
        dom.bind_capture(host.request_capture)
        self._hosts[page] = host
        self._sessions[page] = session

        async def on_load(_page):
            try:
                await host.on_load()
            except PlaywrightError as exc:
                logger.debug("Load hook interrupted on %s: %s", page.url, exc)

        def on_frame_navigated(frame):
            if frame == page.main_frame:
                host.on_navigation()

        async def on_close(_page):
            self._hosts.pop(page, None)
            self._sessions.pop(page, None)
            session.disconnect()
            await host.close()
            logger.info("Tab closed (%d open)", len(self._hosts))

        page.on("load", on_load)
        page.on("framenavigated", on_frame_navigated)
        page.on("close", on_close)
        logger.info("Attached to tab %s", page.url)
        if page.url and page.url != "about:blank":
            await host.on_load()
        return host

    async def stop(self) -> None:
        """Close the browser. Safe to call on a crashed browser."""
        for session in self._sessions.values():
            session.disconnect()
        for host in list(self._hosts.values()):
            await host.close()
        self._hosts.clear()
        self._sessions.clear()
        if self._context is not None:
            with suppress(Exception):
                await self._context.close()
            self._context = None
        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None
        logger.info("Browser stopped")
