"""
CAPTCHA Oracle Module

Submits captured challenge parameters to the 2captcha HTTP API and polls
for the solution token.
"""

import asyncio
import logging
import time

import httpx

from scrapegate.config import config
from scrapegate.errors import CaptchaSolveError
from scrapegate.models import CaptchaSolution, CaptchaTask


logger = logging.getLogger(__name__)


# Extra context keys forwarded to the API as-is
FORWARDED_EXTRA = ("data", "pagedata", "userAgent")


class TwoCaptchaSolver:
    """
    Async 2captcha client.

    Example:
        solver = TwoCaptchaSolver(api_key="...")
        solution = await solver.solve(CaptchaTask(
            kind="turnstile",
            site_key="0x4AAAA...",
            page_url="https://example.com/",
        ))
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        poll_interval: float | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the solver.

        Args:
            api_key: 2captcha API key (default from config)
            base_url: API base URL (default from config)
            poll_interval: Seconds between result polls (default from config)
            timeout: Maximum seconds to wait for a token (default from config)
            client: Shared HTTP client (a short-lived one is used if None)
        """
        self._api_key = api_key or config.captcha.api_key
        self._base_url = (base_url or config.captcha.base_url).rstrip("/")
        self._poll_interval = poll_interval if poll_interval is not None else config.captcha.poll_interval
        self._timeout = timeout or config.captcha.solve_timeout
        self._client = client

    async def solve(self, task: CaptchaTask) -> CaptchaSolution:
        """
        Solve a captured challenge.

        Raises:
            CaptchaSolveError: if the API rejects the task, errors, or times out
        """
        if not self._api_key:
            raise CaptchaSolveError("No 2captcha API key configured")

        if self._client is not None:
            return await self._solve(self._client, task)

        async with httpx.AsyncClient(timeout=30.0) as client:
            return await self._solve(client, task)

    async def _solve(self, client: httpx.AsyncClient, task: CaptchaTask) -> CaptchaSolution:
        submit = {
            "key": self._api_key,
            "method": task.kind,
            "sitekey": task.site_key,
            "pageurl": task.page_url,
            "json": 1,
        }
        if task.action:
            submit["action"] = task.action
        for key in FORWARDED_EXTRA:
            if task.extra.get(key) is not None:
                submit[key] = task.extra[key]

        payload = await self._call(client, "POST", "/in.php", data=submit)
        if payload.get("status") != 1:
            raise CaptchaSolveError(f"2captcha rejected the task: {payload.get('request')}")

        task_id = str(payload.get("request"))
        logger.info(f"Submitted {task.kind} task {task_id} for {task.page_url}")

        deadline = time.monotonic() + self._timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(self._poll_interval)

            result = await self._call(
                client,
                "GET",
                "/res.php",
                params={"key": self._api_key, "action": "get", "id": task_id, "json": 1},
            )

            if result.get("status") == 1:
                logger.info(f"2captcha solved task {task_id}")
                return CaptchaSolution(token=str(result.get("request")), task_id=task_id)

            if result.get("request") != "CAPCHA_NOT_READY":
                raise CaptchaSolveError(f"2captcha failed task {task_id}: {result.get('request')}")

        raise CaptchaSolveError(f"2captcha did not solve task {task_id} within {self._timeout}s")

    async def _call(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> dict:
        try:
            response = await client.request(method, f"{self._base_url}{path}", **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise CaptchaSolveError(f"2captcha request failed: {e}") from e
        except ValueError as e:
            raise CaptchaSolveError(f"2captcha returned invalid JSON: {e}") from e
