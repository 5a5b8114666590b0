"""
Browser Engine Module

The rendering capability: one Playwright Chromium instance shared by all
sessions, with stealth patches applied to every page.
"""

import logging

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from scrapegate.browser.session import Session
from scrapegate.config import config


logger = logging.getLogger(__name__)


class BrowserEngine:
    """
    Headless Chromium shared by the session pool.

    Each launch bumps ``generation`` so sessions opened on an earlier
    browser can be recognised as dead.

    Example:
        engine = BrowserEngine()
        await engine.launch()
        session = await engine.new_session()
    """

    def __init__(
        self,
        headless: bool | None = None,
        launch_timeout: int | None = None,
        args: list[str] | None = None,
        proxy_server: str | None = None,
        blocked_resource_types: list[str] | None = None,
    ):
        """
        Initialize the engine.

        Args:
            headless: Run in headless mode (default from config)
            launch_timeout: Launch timeout in ms (default from config)
            args: Extra Chromium arguments (default from config)
            proxy_server: Upstream proxy for all pages (default from config)
            blocked_resource_types: Types aborted when blocking is on (default from config)
        """
        self._headless = headless if headless is not None else config.browser.headless
        self._launch_timeout = launch_timeout or config.browser.launch_timeout
        self._args = args if args is not None else config.browser.args
        self._proxy_server = proxy_server or config.browser.proxy_server
        self._blocked_resource_types = (
            blocked_resource_types
            if blocked_resource_types is not None
            else config.browser.blocked_resource_types
        )

        self._stealth = Stealth()
        self._playwright = None
        self._browser = None
        self._context = None
        self.generation = 0

    async def __aenter__(self):
        await self.launch()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def is_running(self) -> bool:
        return self._context is not None and self._browser is not None and self._browser.is_connected()

    async def launch(self) -> None:
        """Start the browser instance, releasing whatever a previous launch left behind."""
        if self._playwright is not None or self._browser is not None:
            await self.close()

        self._playwright = await async_playwright().start()

        launch_options = {
            "headless": self._headless,
            "timeout": self._launch_timeout,
            "args": self._args,
        }
        if self._proxy_server:
            launch_options["proxy"] = {"server": self._proxy_server}

        self._browser = await self._playwright.chromium.launch(**launch_options)
        self._context = await self._browser.new_context()
        self.generation += 1

        logger.info(f"Browser launched (generation {self.generation})")

    async def close(self) -> None:
        """Close the browser instance; failures are logged, never raised."""
        context, browser, playwright = self._context, self._browser, self._playwright
        self._context = self._browser = self._playwright = None

        for name, resource, closer in (
            ("context", context, "close"),
            ("browser", browser, "close"),
            ("playwright", playwright, "stop"),
        ):
            if resource is None:
                continue
            try:
                await getattr(resource, closer)()
            except Exception as e:
                logger.warning(f"Error while closing {name}: {e}")

    async def relaunch(self) -> None:
        """Tear down and start a fresh browser."""
        logger.warning("Relaunching the browser")
        await self.close()
        await self.launch()

    async def check_liveness(self) -> None:
        """
        Open and close a throwaway page to prove the browser responds.

        Raises:
            PlaywrightError: if the browser is unresponsive
        """
        if self._context is None:
            raise PlaywrightError("Browser is not running")

        page = await self._context.new_page()
        try:
            await page.goto("about:blank")
        finally:
            await page.close()

    async def new_session(self) -> Session:
        """Open a stealth page with the challenge hook already attached."""
        if self._context is None:
            raise PlaywrightError("Browser is not running")

        page = await self._context.new_page()
        await self._stealth.apply_stealth_async(page)

        session = Session(
            page,
            generation=self.generation,
            blocked_resource_types=self._blocked_resource_types,
        )
        await session.install_challenge_hook()
        return session

    def get_stats(self) -> dict:
        return {
            "running": self.is_running,
            "generation": self.generation,
            "headless": self._headless,
        }
