"""
Scrape Request Handler Module

Per-request workflow: lightweight fetch, or acquire a session, navigate
with the requested wait policy, hand blocks to the recovery controller,
optionally reveal lazy content, and normalize the outcome.
"""

import asyncio
import logging
import time
from pathlib import Path
from urllib.parse import urlparse

from scrapegate.browser import hooks
from scrapegate.browser.pool import SessionPool
from scrapegate.browser.session import Session
from scrapegate.challenge.recovery import RecoveryController
from scrapegate.config import config, NavigationConfig
from scrapegate.errors import NavigationFailure, ScrapeGateError
from scrapegate.fetchers.http_fetcher import HTTPFetcher
from scrapegate.models import NavigationResponse, ScrapeRequest, ScrapeResult


logger = logging.getLogger(__name__)


def content_type_of(headers: dict, default: str = "text/html") -> str:
    """Media type of a response, without parameters."""
    value = next((v for k, v in headers.items() if k.lower() == "content-type"), "")
    return value.split(";", 1)[0].strip() or default


async def reveal_progressively(
    session: Session,
    max_iterations: int,
    growth_timeout: float,
    scroll_delay: float = 0.8,
    nudge_pause: float = 1.0,
    nudge_offset: int = 500,
) -> int:
    """
    Scroll until the document stops growing (infinite scroll pages).

    Each iteration nudges the viewport up a little, then scrolls to the
    bottom so the page's lazy loader fires again, and waits up to
    ``growth_timeout`` for the document to get taller. A wait that runs out
    ends the loop instead of failing.

    Returns:
        Number of iterations that grew the document
    """
    scrolls = 0

    while scrolls < max_iterations:
        previous = await session.evaluate(hooks.SCROLL_HEIGHT)

        await session.evaluate(hooks.NUDGE_UP, nudge_offset)
        await asyncio.sleep(nudge_pause)
        await session.evaluate(hooks.SCROLL_TO_BOTTOM)

        await session.wait_for_height_growth(previous, growth_timeout)

        current = await session.evaluate(hooks.SCROLL_HEIGHT)
        if current <= previous:
            logger.info(f"Page height unchanged after scrolling ({current}px)")
            break

        scrolls += 1
        # look like someone browsing the items
        await asyncio.sleep(scroll_delay)

    logger.info(f"Scrolling finished after {scrolls} scrolls")
    return scrolls


class ScrapeHandler:
    """
    Top-level per-request workflow.

    Example:
        handler = ScrapeHandler(pool, controller)
        result = await handler.handle(ScrapeRequest(url="https://example.com"))
    """

    def __init__(
        self,
        pool: SessionPool,
        controller: RecoveryController,
        fetcher: HTTPFetcher | None = None,
        navigation: NavigationConfig | None = None,
    ):
        """
        Initialize the handler.

        Args:
            pool: Session pool
            controller: Recovery controller
            fetcher: Lightweight fetcher (created if None)
            navigation: Navigation settings (default from config)
        """
        self._pool = pool
        self._controller = controller
        self._fetcher = fetcher or HTTPFetcher()
        self._nav = navigation or config.navigation

    async def handle(self, request: ScrapeRequest) -> ScrapeResult:
        """
        Scrape one URL.

        Raises:
            SessionCreationFailure: if the pool cannot produce a session
            NavigationFailure: if navigation itself fails
            MaxAttemptsExceeded: if the page keeps challenging after a solve
        """
        if request.lightweight:
            return await self._fetch_lightweight(request)

        acquire_start = time.time()
        session = await self._pool.acquire()
        acquire_time = time.time() - acquire_start

        faulted = True
        try:
            result = await self._scrape(session, request)
            result.acquire_time = acquire_time
            faulted = False
            return result
        except ScrapeGateError as e:
            logger.error(f"Scrape of {request.url} failed: {e}")
            await self._capture_failure(session, request)
            raise
        except Exception as e:
            logger.error(f"Scrape of {request.url} failed: {e!r}")
            await self._capture_failure(session, request)
            raise NavigationFailure(request.url, str(e)) from e
        finally:
            if faulted:
                await self._pool.destroy(session)
            else:
                await self._pool.release(session)

    async def _fetch_lightweight(self, request: ScrapeRequest) -> ScrapeResult:
        start = time.time()
        response = await self._fetcher.fetch(request.url)

        return ScrapeResult(
            url=request.url,
            status=response.status,
            status_text=response.status_text,
            headers=response.headers,
            body=response.body,
            final_url=response.url,
            content_type=content_type_of(response.headers),
            duration=time.time() - start,
        )

    async def _scrape(self, session: Session, request: ScrapeRequest) -> ScrapeResult:
        start = time.time()

        await session.reset()
        await session.set_resource_blocking(request.block_resources)

        async def navigate() -> NavigationResponse:
            response = await session.navigate(request.url, timeout=self._nav.timeout)
            if request.wait_for_network:
                if not await session.wait_for_network_idle(self._nav.network_idle_timeout):
                    logger.info(f"Network still busy on {request.url}; continuing")
            return response

        recovery = await self._controller.run(session, request, navigate)
        response = recovery.response

        body = response.body
        content_type = content_type_of(response.headers)

        if recovery.recovered and request.infinite_scroll:
            max_scrolls = (
                request.max_scrolls
                if request.max_scrolls is not None
                else self._nav.max_reveal_iterations
            )
            await reveal_progressively(
                session,
                max_iterations=max_scrolls,
                growth_timeout=self._nav.reveal_growth_timeout,
                scroll_delay=self._nav.reveal_scroll_delay,
                nudge_pause=self._nav.reveal_nudge_pause,
                nudge_offset=self._nav.reveal_nudge_offset,
            )
            body = await session.content()
            content_type = "text/html"

        if request.screenshot:
            body = await session.screenshot()
            content_type = "image/png"

        logger.info(f"{request.url}: {response.status} {response.status_text} after {recovery.attempts} attempt(s)")

        return ScrapeResult(
            url=request.url,
            status=response.status,
            status_text=response.status_text,
            headers=response.headers,
            body=body,
            final_url=session.url,
            egress_point=recovery.egress_point,
            content_type=content_type,
            duration=time.time() - start,
            attempts=recovery.attempts,
            captcha_solves=recovery.captcha_solves,
            failovers=recovery.failovers,
        )

    async def _capture_failure(self, session: Session, request: ScrapeRequest) -> None:
        """Best-effort diagnostic screenshot of a failed page."""
        directory = Path(self._nav.failure_screenshot_dir)
        host = urlparse(request.url).netloc or "unknown"
        path = directory / f"{int(time.time() * 1000)}-{host}-failed.screenshot.png"

        try:
            directory.mkdir(parents=True, exist_ok=True)
            await session.screenshot(path=str(path))
            logger.info(f"Failure screenshot saved to {path}")
        except Exception as e:
            logger.debug(f"Could not capture failure screenshot: {e}")
