"""
Main Orchestrator Module

The explicitly owned context that builds and connects every component:
rendering engine, session pool, egress registry, CAPTCHA oracle, recovery
controller and request handler. Nothing is a process-wide singleton, so
independent orchestrators can coexist (e.g. in tests).
"""

import asyncio
import logging
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from scrapegate.browser.engine import BrowserEngine
from scrapegate.browser.pool import SessionPool
from scrapegate.challenge.detector import ChallengeDetector
from scrapegate.challenge.recovery import RecoveryController
from scrapegate.challenge.solver import TwoCaptchaSolver
from scrapegate.config import config as default_config, ScrapeGateConfig
from scrapegate.egress.registry import EgressRegistry
from scrapegate.errors import ScrapeGateError
from scrapegate.fetchers.http_fetcher import HTTPFetcher
from scrapegate.handler import ScrapeHandler
from scrapegate.models import OrchestratorStats, ScrapeRequest, ScrapeResult


console = Console()
logger = logging.getLogger(__name__)


class OrchestratorStatus(Enum):
    """Status of the orchestrator."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class Orchestrator:
    """
    Resilient scrape orchestrator.

    Implements the complete workflow:
    1. Request arrives (lightweight requests skip straight to HTTP)
    2. Session acquired from the pool
    3. Navigate with the requested wait policy
    4. Blocks recovered (CAPTCHA solve or egress failover), then retried
    5. Optional progressive reveal / screenshot
    6. Result normalized; session released or destroyed

    Example:
        async with Orchestrator() as orchestrator:
            result = await orchestrator.scrape(ScrapeRequest(url="https://example.com"))
    """

    def __init__(
        self,
        config: ScrapeGateConfig | None = None,
        engine: BrowserEngine | None = None,
        registry: EgressRegistry | None = None,
        solver: TwoCaptchaSolver | None = None,
        fetcher: HTTPFetcher | None = None,
        detector: ChallengeDetector | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Custom configuration (uses global if None)
            engine: Rendering engine (Playwright Chromium if None)
            registry: Egress registry (wg-quick backed if None)
            solver: CAPTCHA oracle (2captcha if None)
            fetcher: Lightweight HTTP fetcher
            detector: Challenge classifier chain
        """
        self._config = config or default_config
        cfg = self._config

        self._engine = engine or BrowserEngine(
            headless=cfg.browser.headless,
            launch_timeout=cfg.browser.launch_timeout,
            args=cfg.browser.args,
            proxy_server=cfg.browser.proxy_server,
            blocked_resource_types=cfg.browser.blocked_resource_types,
        )
        self._pool = SessionPool(
            self._engine,
            max_size=cfg.pool.max_sessions,
            idle_timeout=cfg.pool.idle_timeout,
            eviction_interval=cfg.pool.eviction_interval,
            create_attempts=cfg.pool.create_attempts,
            liveness_timeout=cfg.pool.liveness_timeout,
        )

        self._registry = registry or EgressRegistry(
            config_dir=cfg.egress.config_dir,
            health_check_interval=cfg.egress.health_check_interval,
            probe_timeout=cfg.egress.probe_timeout,
        )
        if cfg.egress.seed_defaults and cfg.egress.private_key:
            count = self._registry.seed_defaults(cfg.egress.private_key)
            logger.info(f"Seeded {count} default egress points")

        self._solver = solver or TwoCaptchaSolver(
            api_key=cfg.captcha.api_key,
            base_url=cfg.captcha.base_url,
            poll_interval=cfg.captcha.poll_interval,
            timeout=cfg.captcha.solve_timeout,
        )
        self._controller = RecoveryController(
            self._registry,
            self._solver,
            detector=detector,
            max_captcha_attempts=cfg.max_captcha_attempts,
            max_failovers=cfg.egress.max_failovers,
            settle_delay=cfg.egress.settle_delay,
            capture_timeout=cfg.captcha.capture_timeout,
            challenge_idle_timeout=cfg.navigation.challenge_idle_timeout,
        )
        self._handler = ScrapeHandler(
            self._pool,
            self._controller,
            fetcher=fetcher or HTTPFetcher(timeout=cfg.navigation.timeout),
            navigation=cfg.navigation,
        )

        # State
        self._status = OrchestratorStatus.IDLE
        self._stats = OrchestratorStats()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self, launch_browser: bool = True) -> None:
        """
        Start background tasks and (optionally) the browser.

        Args:
            launch_browser: Launch now instead of on the first acquire
        """
        self._config.ensure_directories()

        if launch_browser and not self._engine.is_running:
            await self._engine.launch()

        self._registry.start_health_checks()
        self._pool.start_eviction()
        self._status = OrchestratorStatus.RUNNING

    async def close(self) -> None:
        """Stop background tasks, close sessions, bring the tunnel down, close the browser."""
        await self._pool.close()
        await self._registry.close()
        await self._engine.close()
        self._status = OrchestratorStatus.STOPPED

    async def scrape(self, request: ScrapeRequest) -> ScrapeResult:
        """
        Scrape a single URL.

        Raises:
            ScrapeGateError: on orchestration-level failure
        """
        self._stats.requests += 1
        if request.lightweight:
            self._stats.lightweight_fetches += 1

        try:
            result = await self._handler.handle(request)
        except ScrapeGateError:
            self._stats.failed += 1
            raise

        self._stats.successful += 1
        self._stats.captcha_solves += result.captcha_solves
        self._stats.failovers += result.failovers
        return result

    async def run_single(self, request: ScrapeRequest) -> ScrapeResult:
        """
        Scrape a single URL, reporting failures in the result.

        Returns:
            ScrapeResult (``error`` set on failure)
        """
        try:
            return await self.scrape(request)
        except ScrapeGateError as e:
            return ScrapeResult(url=request.url, error=str(e))

    async def run(
        self,
        requests: List[ScrapeRequest],
        workers: int = 3,
    ) -> List[ScrapeResult]:
        """
        Scrape several URLs concurrently.

        Args:
            requests: Requests to run
            workers: Maximum requests in flight (the pool bounds rendering further)

        Returns:
            List of ScrapeResult objects, in input order
        """
        semaphore = asyncio.Semaphore(workers)

        async def run_bounded(request: ScrapeRequest) -> ScrapeResult:
            async with semaphore:
                return await self.run_single(request)

        console.print(f"[blue]Scraping {len(requests)} URLs with {workers} workers...[/blue]")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Scraping...", total=None)
            results = await asyncio.gather(*(run_bounded(r) for r in requests))
            progress.update(task, description="Complete!")

        return list(results)

    # Egress management

    def list_egress_points(self) -> List[dict]:
        return [point.to_dict() for point in self._registry.list_points()]

    def egress_health(self) -> List[dict]:
        return [asdict(record) for record in self._registry.health_status()]

    def active_egress_point(self) -> Optional[dict]:
        point = self._registry.get_active()
        return point.to_dict() if point else None

    def register_egress(self, name: str, location: str, config_text: str) -> str:
        """
        Register one egress point.

        Raises:
            ConfigValidationError: if the configuration is malformed
        """
        return self._registry.add(name, location, config_text)

    def register_egress_bulk(self, entries: List[dict]) -> List[str]:
        """Register several egress points; one bad entry rejects them all."""
        return self._registry.add_many(entries)

    async def register_egress_file(self, file_path: str | Path, location: str, name: str | None = None) -> str:
        return await self._registry.add_file(file_path, location, name)

    async def connect_egress(self, point_id: str) -> bool:
        """
        Manually activate an egress point.

        Raises:
            EgressPointNotFound: if the id is unknown
        """
        return await self._registry.connect(point_id)

    async def disconnect_egress(self) -> None:
        await self._registry.disconnect()

    async def remove_egress(self, point_id: str) -> bool:
        return await self._registry.remove(point_id)

    @property
    def registry(self) -> EgressRegistry:
        return self._registry

    @property
    def pool(self) -> SessionPool:
        return self._pool

    @property
    def detector(self) -> ChallengeDetector:
        return self._controller.detector

    def get_stats(self) -> dict:
        """Get current statistics."""
        return {
            "status": self._status.value,
            "orchestrator": self._stats.to_dict(),
            "pool": self._pool.get_stats(),
            "egress": self._registry.get_stats(),
        }
