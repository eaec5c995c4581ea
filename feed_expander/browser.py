from __future__ import annotations

import logging
import os
from typing import Callable, Optional

from playwright.async_api import (
    BrowserContext,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import Settings, settings as default_settings
from .errors import SubscriptionSetupFailed
from .hosts.base import Host
from .hosts.page_host import PageHost
from .pipeline.expander import Expander
from .pipeline.factory import create_expander

ExpanderFactory = Callable[[Host, Settings], Expander]


class BrowserSession:
    def __init__(self, user_data_dir: str | None = None, headless: bool | None = None) -> None:
        self.context: BrowserContext | None = None
        self.page: Page | None = None
        self._playwright: Playwright | None = None
        self.headless = default_settings.headless if headless is None else headless
        self.user_data_dir = os.path.expanduser(user_data_dir or default_settings.user_data_dir)

    async def __aenter__(self) -> "BrowserSession":
        self._playwright = await async_playwright().start()
        self.context = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=self.user_data_dir,
            headless=self.headless,
        )
        self.page = self.context.pages[0] if self.context.pages else await self.context.new_page()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.context:
            await self.context.close()
        if self._playwright:
            await self._playwright.stop()

    async def goto(self, url: str, wait_ms: int = 0) -> None:
        """
        Navigate to a URL and give the app a moment to hydrate.
        """
        if not self.page:
            raise RuntimeError("Browser page is not initialized. Use within an async context manager.")

        await self.page.goto(url, wait_until="domcontentloaded", timeout=30000)
        try:
            await self.page.wait_for_load_state("networkidle", timeout=5000)
        except PlaywrightTimeoutError:
            logging.info("networkidle wait timed out, continuing anyway url=%s", url)

        if wait_ms > 0:
            await self.page.wait_for_timeout(wait_ms)

    def __repr__(self) -> str:
        return f"BrowserSession(headless={self.headless})"


class PageLifecycle:
    """Runs one expander per document of a page.

    A fresh expander starts whenever a document becomes ready and the previous
    one is torn down with it. Closing the page stops everything.
    """

    def __init__(
        self,
        page: Page,
        settings: Optional[Settings] = None,
        expander_factory: ExpanderFactory = create_expander,
        host: Optional[PageHost] = None,
    ) -> None:
        self.page = page
        self.settings = settings or default_settings
        self.host = host or PageHost(page)
        self._expander_factory = expander_factory
        self.expander: Optional[Expander] = None
        self.documents = 0

    async def attach(self) -> None:
        self.page.on("domcontentloaded", self._on_document_ready)
        self.page.on("close", self._on_close)
        ready_state = await self.page.evaluate("() => document.readyState")
        if ready_state != "loading":
            await self.start()

    async def start(self) -> Expander:
        self.stop()
        self.host.reset()
        expander = self._expander_factory(self.host, self.settings)
        await expander.start()
        self.expander = expander
        self.documents += 1
        return expander

    def stop(self) -> None:
        expander, self.expander = self.expander, None
        if expander is not None:
            expander.stop()

    async def _on_document_ready(self, _page: Page) -> None:
        try:
            await self.start()
        except SubscriptionSetupFailed as exc:
            logging.error("expander_not_started url=%s error=%s", self.page.url, exc)

    def _on_close(self, _page: Page) -> None:
        self.stop()
        self.host.close()

    async def wait_closed(self) -> None:
        if self.page.is_closed():
            return
        await self.page.wait_for_event("close", timeout=0)
