"""
Shared fakes for the engine, sessions, tunnel, probe and CAPTCHA oracle.
"""

import asyncio
import time
import uuid
from pathlib import Path

import pytest

from scrapegate.browser import hooks
from scrapegate.browser.session import ChallengeChannel
from scrapegate.config import NavigationConfig
from scrapegate.egress.probe import ProbeResult
from scrapegate.errors import CaptchaSolveError, TunnelToolUnavailable
from scrapegate.models import CaptchaSolution, CaptchaTask, NavigationResponse


PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"

VALID_CONFIG = """[Interface]
Address = 10.5.0.2/16
PrivateKey = aGVsbG8tcHJpdmF0ZS1rZXktZm9yLXRlc3Rz
DNS = 103.86.96.100

[Peer]
PublicKey = aGVsbG8tcHVibGljLWtleS1mb3ItdGVzdHM=
AllowedIPs = 0.0.0.0/0
Endpoint = vpn.example.net:51820
"""


def ok(body: bytes = b"OK", url: str = "https://example.com/") -> NavigationResponse:
    return NavigationResponse(
        status=200,
        status_text="OK",
        headers={"content-type": "text/html; charset=utf-8"},
        url=url,
        body=body,
    )


def challenged(url: str = "https://example.com/") -> NavigationResponse:
    return NavigationResponse(
        status=403,
        status_text="Forbidden",
        headers={"cf-mitigated": "challenge", "content-type": "text/html"},
        url=url,
        body=b"Just a moment...",
    )


def rate_limited(url: str = "https://example.com/") -> NavigationResponse:
    return NavigationResponse(
        status=429,
        status_text="Too Many Requests",
        headers={"retry-after": "30"},
        url=url,
        body=b"slow down",
    )


TURNSTILE_TASK = CaptchaTask(
    kind="turnstile",
    site_key="0x4AAAAAAAtest",
    page_url="https://example.com/",
    action="managed",
    extra={"data": "cdata", "pagedata": "chl", "userAgent": "Mozilla/5.0"},
)


class FakeSession:
    """Stand-in for Session driven by a shared navigation script."""

    def __init__(self, generation=1, script=None, challenge_task=None, close_error=None):
        self.id = uuid.uuid4().hex[:8]
        self.created_at = time.time()
        self.last_used = self.created_at
        self.healthy = True
        self.generation = generation
        self.challenge = ChallengeChannel()

        self.script = script if script is not None else []
        self.challenge_task = challenge_task
        self.close_error = close_error

        self.navigations = []
        self.delivered = []
        self.idle_waits = []
        self.screenshots = []
        self.blocking = False
        self.network_idle = True
        self.height = 1000
        self.growth = []
        self.closed = False
        self.url = "about:blank"

    def touch(self):
        self.last_used = time.time()

    async def reset(self):
        self.challenge.reset()
        self.url = "about:blank"

    async def set_resource_blocking(self, enabled):
        self.blocking = enabled

    async def navigate(self, url, timeout):
        self.navigations.append(url)
        step = self.script.pop(0) if self.script else ok(url=url)
        if isinstance(step, BaseException):
            raise step

        self.url = step.url or url
        if step.status == 403 and self.challenge_task is not None:
            self.challenge.post(self.challenge_task, self._deliver)
        return step

    async def _deliver(self, token):
        self.delivered.append(token)

    async def wait_for_network_idle(self, timeout):
        self.idle_waits.append(timeout)
        return self.network_idle

    async def wait_for_height_growth(self, previous, timeout):
        return self.height > previous

    async def evaluate(self, script, arg=None):
        if script == hooks.SCROLL_HEIGHT:
            return self.height
        if script == hooks.SCROLL_TO_BOTTOM and self.growth:
            self.height += self.growth.pop(0)
        return None

    async def content(self):
        return f"<html><body data-height='{self.height}'></body></html>".encode("utf-8")

    async def screenshot(self, path=None):
        self.screenshots.append(path)
        if path:
            Path(path).write_bytes(PNG_BYTES)
        return PNG_BYTES

    @property
    def is_closed(self):
        return self.closed

    async def close(self):
        if self.close_error is not None:
            raise self.close_error
        self.closed = True


class FakeEngine:
    """Stand-in for BrowserEngine that counts lifecycle calls."""

    def __init__(self, liveness_failures=0, script=None, challenge_task=None, hung_checks=0):
        self.generation = 0
        self.liveness_failures = liveness_failures
        self.hung_checks = hung_checks
        self.script = script if script is not None else []
        self.challenge_task = challenge_task

        self.launches = 0
        self.closes = 0
        self.relaunches = 0
        self.liveness_checks = 0
        self.sessions = []
        self._running = False

    @property
    def is_running(self):
        return self._running

    async def launch(self):
        # a real launch yields to the loop before the browser is up
        await asyncio.sleep(0)
        self._running = True
        self.generation += 1
        self.launches += 1

    async def close(self):
        self._running = False
        self.closes += 1

    async def relaunch(self):
        self.relaunches += 1
        await self.close()
        await self.launch()

    async def check_liveness(self):
        self.liveness_checks += 1
        if self.hung_checks > 0:
            self.hung_checks -= 1
            await asyncio.sleep(3600)
        if self.liveness_failures > 0:
            self.liveness_failures -= 1
            raise RuntimeError("browser did not respond")

    async def new_session(self):
        session = FakeSession(
            generation=self.generation,
            script=self.script,
            challenge_task=self.challenge_task,
        )
        self.sessions.append(session)
        return session

    def get_stats(self):
        return {"running": self._running, "generation": self.generation}


class FakeTunnel:
    """Records tunnel transitions and the number of tunnels up at once."""

    def __init__(self, available=True, up_error=None, down_error=None):
        self.available = available
        self.up_error = up_error
        self.down_error = down_error
        self.calls = []
        self.up_now = set()
        self.max_up = 0

    def is_available(self):
        return self.available

    async def up(self, config_path):
        point_id = Path(config_path).stem
        self.calls.append(("up", point_id))
        if not self.available:
            raise TunnelToolUnavailable("wg-quick is not installed")
        if self.up_error is not None:
            raise self.up_error
        self.up_now.add(point_id)
        self.max_up = max(self.max_up, len(self.up_now))

    async def down(self, config_path):
        point_id = Path(config_path).stem
        self.calls.append(("down", point_id))
        if not self.available:
            raise TunnelToolUnavailable("wg-quick is not installed")
        self.up_now.discard(point_id)
        if self.down_error is not None:
            raise self.down_error


class FakeProbe:
    """Reachability probe answering from a host -> healthy map."""

    def __init__(self, healthy=True, hosts=None, error=None):
        self.healthy = healthy
        self.hosts = hosts or {}
        self.error = error
        self.calls = []

    async def check(self, host, port, timeout):
        self.calls.append((host, port))
        if self.error is not None:
            raise self.error
        healthy = self.hosts.get(host, self.healthy)
        return ProbeResult(
            healthy=healthy,
            response_time=0.01 if healthy else None,
            error=None if healthy else "unreachable",
        )


class FakeSolver:
    """CAPTCHA oracle returning a fixed token."""

    def __init__(self, token="solved-token", error=None):
        self.token = token
        self.error = error
        self.tasks = []

    async def solve(self, task):
        self.tasks.append(task)
        if self.error is not None:
            raise CaptchaSolveError(self.error)
        return CaptchaSolution(token=self.token, task_id="1")


@pytest.fixture
def tunnel():
    return FakeTunnel()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def navigation(tmp_path):
    """Navigation settings with no artificial pauses."""
    return NavigationConfig(
        timeout=5,
        network_idle_timeout=0.1,
        challenge_idle_timeout=0.1,
        max_reveal_iterations=5,
        reveal_growth_timeout=0.1,
        reveal_scroll_delay=0,
        reveal_nudge_pause=0,
        failure_screenshot_dir=tmp_path / "failures",
    )
