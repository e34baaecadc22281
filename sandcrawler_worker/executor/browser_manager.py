"""Browser lifecycle management for scrape orders."""

from __future__ import annotations

import logging
from typing import Any

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from sandcrawler_worker.core.exceptions import BrowserError

logger = logging.getLogger(__name__)


def context_options(page_settings: dict[str, Any]) -> dict[str, Any]:
    """
    Translate page settings into Playwright browser-context options.

    Page CSP is always bypassed: order scripts and injected helpers are
    evaluated in the page and must not depend on 'unsafe-eval' or on the
    site's script-src.
    """
    options: dict[str, Any] = {"bypass_csp": True}

    user_agent = page_settings.get("userAgent")
    if user_agent:
        options["user_agent"] = str(user_agent)

    if "javascriptEnabled" in page_settings:
        options["java_script_enabled"] = bool(page_settings["javascriptEnabled"])

    user_name = page_settings.get("userName")
    if user_name:
        options["http_credentials"] = {
            "username": str(user_name),
            "password": str(page_settings.get("password") or ""),
        }

    viewport = page_settings.get("viewportSize")
    if isinstance(viewport, dict) and "width" in viewport and "height" in viewport:
        options["viewport"] = {"width": int(viewport["width"]), "height": int(viewport["height"])}

    if page_settings.get("ignoreSslErrors"):
        options["ignore_https_errors"] = True

    return options


class BrowserManager:
    """Manages browser lifecycle: launch, per-order pages, quit."""

    def __init__(self, headless: bool = True) -> None:
        self.headless = headless
        self.browser: Browser | None = None
        self._playwright: Playwright | None = None

    async def initialize(self) -> Browser:
        """Launch Chromium and return the browser instance."""
        try:
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(headless=self.headless)
        except PlaywrightError as e:
            raise BrowserError(f"Failed to launch browser: {e}", original_error=e) from e
        logger.info(f"Browser initialized (headless={self.headless})")
        return self.browser

    async def quit(self) -> None:
        """Quit browser and cleanup."""
        if self.browser:
            await self.browser.close()
            self.browser = None
            logger.info("Browser quit")
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def new_page(self, page_settings: dict[str, Any]) -> Page:
        """
        Create an isolated page for one order.

        Each page gets its own browser context so cookies, storage and
        settings never leak between orders. Closing the context releases
        the page.
        """
        if not self.browser:
            raise RuntimeError("Browser not initialized")

        try:
            context = await self.browser.new_context(**context_options(page_settings))
            return await context.new_page()
        except PlaywrightError as e:
            raise BrowserError(f"Failed to create page: {e}", original_error=e) from e

    @property
    def is_running(self) -> bool:
        return self.browser is not None and self.browser.is_connected()
