"""
Session Module

One renderable browsing context (a Playwright page) owned by the pool,
plus the message channel that carries captured challenge parameters out of
the page and the solution token back in.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from scrapegate.browser import hooks
from scrapegate.errors import NavigationFailure
from scrapegate.models import CaptchaTask, NavigationResponse


logger = logging.getLogger(__name__)


@dataclass
class ChallengeCapture:
    """A challenge registration intercepted inside the page."""

    task: CaptchaTask
    deliver: Callable[[str], Awaitable[None]]


class ChallengeChannel:
    """
    Receives challenge messages posted by the page hook.

    The page posts one structured message per widget registration; the
    newest capture wins. The solution goes back through the callback
    reference captured with that message.
    """

    def __init__(self):
        self._capture: Optional[ChallengeCapture] = None
        self._captured = asyncio.Event()

    def post(self, task: CaptchaTask, deliver: Callable[[str], Awaitable[None]]) -> None:
        self._capture = ChallengeCapture(task=task, deliver=deliver)
        self._captured.set()
        logger.info(f"Captured {task.kind} challenge on {task.page_url}")

    async def on_message(self, source: Any, message: Any) -> None:
        """Playwright binding callback; ``message`` is a JSHandle."""
        params = await message.evaluate(hooks.READ_MESSAGE)

        async def deliver(token: str) -> None:
            await message.evaluate(hooks.DELIVER_TOKEN, token)

        task = CaptchaTask(
            kind=params.get("kind") or "turnstile",
            site_key=params.get("sitekey") or "",
            page_url=params.get("pageurl") or "",
            action=params.get("action"),
            extra={
                key: params[key]
                for key in ("data", "pagedata", "userAgent")
                if params.get(key) is not None
            },
        )
        self.post(task, deliver)

    async def wait(self, timeout: float) -> Optional[ChallengeCapture]:
        """Wait for a capture; None if the page never registered a widget."""
        try:
            await asyncio.wait_for(self._captured.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._capture

    @property
    def capture(self) -> Optional[ChallengeCapture]:
        return self._capture

    def reset(self) -> None:
        self._capture = None
        self._captured.clear()


class Session:
    """
    Handle to one browser page.

    Created by BrowserEngine.new_session() with stealth and the challenge
    hook already installed. Never shared between concurrent requests.
    """

    def __init__(
        self,
        page,
        generation: int = 0,
        blocked_resource_types: list[str] | None = None,
    ):
        self.id = uuid.uuid4().hex[:8]
        self.created_at = time.time()
        self.last_used = self.created_at
        self.healthy = True
        self.generation = generation
        self.challenge = ChallengeChannel()

        self._page = page
        self._blocked_resource_types = set(blocked_resource_types or [])
        self._blocking = False

    async def install_challenge_hook(self) -> None:
        """Attach the challenge interception; must run before any navigation."""
        await self._page.expose_binding(
            hooks.CHALLENGE_BINDING,
            self.challenge.on_message,
            handle=True,
        )
        await self._page.add_init_script(hooks.TURNSTILE_HOOK)

    def touch(self) -> None:
        self.last_used = time.time()

    async def reset(self) -> None:
        """Return the page to a blank state between requests."""
        self.challenge.reset()
        await self._page.goto("about:blank")

    async def set_resource_blocking(self, enabled: bool) -> None:
        if enabled == self._blocking:
            return

        if enabled:
            await self._page.route("**/*", self._handle_route)
        else:
            await self._page.unroute("**/*", self._handle_route)
        self._blocking = enabled

    async def _handle_route(self, route) -> None:
        if route.request.resource_type in self._blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    async def navigate(self, url: str, timeout: float) -> NavigationResponse:
        """
        Navigate to a URL and capture the main document response.

        Returns once the main document has been parsed; waiting for the
        network to settle is a separate, optional step.

        Raises:
            NavigationFailure: on timeout or transport error
        """
        try:
            response = await self._page.goto(
                url,
                timeout=timeout * 1000,
                wait_until="domcontentloaded",
            )
        except PlaywrightError as e:
            raise NavigationFailure(url, str(e)) from e

        if response is None:
            raise NavigationFailure(url, "page.goto did not return any response")

        headers = await response.all_headers()

        body = None
        try:
            body = await response.body()
        except PlaywrightError:
            # some error pages come without a body
            pass

        return NavigationResponse(
            status=response.status,
            status_text=response.status_text,
            headers=headers,
            url=self._page.url,
            body=body,
        )

    async def wait_for_network_idle(self, timeout: float) -> bool:
        """Wait for the network to go quiet; False if the deadline passed first."""
        try:
            await self._page.wait_for_load_state("networkidle", timeout=timeout * 1000)
            return True
        except PlaywrightTimeoutError:
            return False

    async def wait_for_height_growth(self, previous: int, timeout: float) -> bool:
        """Wait until the document grows past ``previous``; False on timeout."""
        try:
            await self._page.wait_for_function(
                hooks.HEIGHT_GREW,
                arg=previous,
                timeout=timeout * 1000,
                polling=100,
            )
            return True
        except PlaywrightTimeoutError:
            return False

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self._page.evaluate(script, arg)

    async def content(self) -> bytes:
        return (await self._page.content()).encode("utf-8")

    async def screenshot(self, path: str | None = None) -> bytes:
        return await self._page.screenshot(path=path)

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def is_closed(self) -> bool:
        return self._page.is_closed()

    async def close(self) -> None:
        await self._page.close()
