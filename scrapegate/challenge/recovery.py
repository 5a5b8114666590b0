"""
Recovery Controller Module

Drives one request through fetch -> evaluate -> recover -> retry until it
either comes back clean or recovery is exhausted.

Two recovery paths, each with its own bound:
- managed challenge: solve through the CAPTCHA oracle and retry; a second
  challenge after a solve raises MaxAttemptsExceeded
- rate limiting: fail over to another egress point and retry; when no
  point is usable or failovers run out, the blocked response is returned
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from scrapegate.browser.session import Session
from scrapegate.challenge.detector import ChallengeDetector
from scrapegate.challenge.solver import TwoCaptchaSolver
from scrapegate.config import config
from scrapegate.egress.registry import EgressRegistry
from scrapegate.errors import CaptchaSolveError, ChallengeUnresolved, MaxAttemptsExceeded
from scrapegate.models import ChallengeOutcome, EgressPoint, NavigationResponse, ScrapeRequest


logger = logging.getLogger(__name__)


Navigate = Callable[[], Awaitable[NavigationResponse]]


@dataclass
class RecoveryResult:
    """Final response of a request and what it took to get there."""

    response: NavigationResponse
    outcome: ChallengeOutcome
    attempts: int = 1
    egress_point: Optional[EgressPoint] = None
    captcha_solves: int = 0
    failovers: int = 0

    @property
    def recovered(self) -> bool:
        return self.outcome is ChallengeOutcome.NONE


class RecoveryController:
    """
    Challenge recovery state machine.

    Example:
        controller = RecoveryController(registry, solver)
        result = await controller.run(
            session,
            request,
            lambda: session.navigate(request.url, timeout=180),
        )
    """

    def __init__(
        self,
        registry: EgressRegistry,
        solver: TwoCaptchaSolver,
        detector: ChallengeDetector | None = None,
        max_captcha_attempts: int | None = None,
        max_failovers: int | None = None,
        settle_delay: float | None = None,
        capture_timeout: float | None = None,
        challenge_idle_timeout: float | None = None,
    ):
        """
        Initialize the controller.

        Args:
            registry: Egress registry used for failover
            solver: CAPTCHA oracle
            detector: Challenge classifier chain (defaults if None)
            max_captcha_attempts: Navigations allowed on the CAPTCHA path (default from config)
            max_failovers: Egress failovers per request (default from config)
            settle_delay: Seconds to wait after connecting (default from config)
            capture_timeout: Seconds to wait for the widget capture (default from config)
            challenge_idle_timeout: Quiescence wait after a solution (default from config)
        """
        self._registry = registry
        self._solver = solver
        self._detector = detector or ChallengeDetector()
        self._max_captcha_attempts = max_captcha_attempts or config.max_captcha_attempts
        self._max_failovers = max_failovers if max_failovers is not None else config.egress.max_failovers
        self._settle_delay = settle_delay if settle_delay is not None else config.egress.settle_delay
        self._capture_timeout = capture_timeout if capture_timeout is not None else config.captcha.capture_timeout
        self._challenge_idle_timeout = (
            challenge_idle_timeout
            if challenge_idle_timeout is not None
            else config.navigation.challenge_idle_timeout
        )

    @property
    def detector(self) -> ChallengeDetector:
        return self._detector

    async def run(self, session: Session, request: ScrapeRequest, navigate: Navigate) -> RecoveryResult:
        """
        Fetch through ``navigate`` and recover from blocks until terminal.

        Raises:
            MaxAttemptsExceeded: if the page challenges again after a solve
        """
        attempts = 0
        captcha_attempts = 0
        captcha_solves = 0
        failovers = 0
        egress_point: Optional[EgressPoint] = None

        while True:
            attempts += 1
            response = await navigate()
            outcome = self._detector.classify(response.status, response.headers)

            def finish() -> RecoveryResult:
                return RecoveryResult(
                    response=response,
                    outcome=outcome,
                    attempts=attempts,
                    egress_point=egress_point,
                    captcha_solves=captcha_solves,
                    failovers=failovers,
                )

            if outcome is ChallengeOutcome.NONE:
                return finish()

            if outcome is ChallengeOutcome.MANAGED_CHALLENGE:
                captcha_attempts += 1
                if captcha_attempts >= self._max_captcha_attempts:
                    raise MaxAttemptsExceeded(request.url, self._max_captcha_attempts)

                logger.info(f"Managed challenge on {request.url}. Trying to pass automatically.")
                try:
                    await self._solve_challenge(session)
                except ChallengeUnresolved as e:
                    logger.warning(f"Challenge on {request.url} unresolved: {e}")
                    return finish()

                captcha_solves += 1
                logger.info(f"Scraping {request.url} again after solving the challenge")
                continue

            # rate limited
            if failovers >= self._max_failovers:
                logger.warning(f"Rate limited on {request.url}; {failovers} failovers used, giving up")
                return finish()

            point = await self._registry.connect_best(request.location)
            if point is None:
                logger.warning(f"Rate limited on {request.url}; no usable egress point")
                return finish()

            failovers += 1
            egress_point = point
            logger.info(f"Rate limited on {request.url}; switched egress to {point.id}, retrying")
            await asyncio.sleep(self._settle_delay)

    async def _solve_challenge(self, session: Session) -> None:
        capture = await session.challenge.wait(self._capture_timeout)
        if capture is None:
            raise ChallengeUnresolved("the page never registered its challenge widget")

        try:
            solution = await self._solver.solve(capture.task)
        except CaptchaSolveError as e:
            raise ChallengeUnresolved(str(e)) from e

        await capture.deliver(solution.token)

        if not await session.wait_for_network_idle(self._challenge_idle_timeout):
            logger.info("Network did not settle after submitting the solution; retrying anyway")

        session.challenge.reset()
