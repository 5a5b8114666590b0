"""
Egress Registry Module

Stores named WireGuard egress points, tracks their health with periodic
probes, selects a candidate by location and health, and drives the single
active tunnel.
"""

import asyncio
import logging
import os
import random
import time
from pathlib import Path
from typing import Iterable, Optional

import aiofiles

from scrapegate.config import config
from scrapegate.errors import EgressPointNotFound, TunnelError, TunnelToolUnavailable
from scrapegate.egress.probe import HttpReachabilityProbe, ProbeResult
from scrapegate.egress.tunnel import WireGuardTunnel
from scrapegate.egress.wireguard import (
    DEFAULT_POINTS,
    make_point_id,
    parse_config,
    render_config,
    validate_registration,
)
from scrapegate.models import EgressHealth, EgressPoint


logger = logging.getLogger(__name__)


class EgressRegistry:
    """
    Registry of egress points with health-checking and failover selection.

    Features:
    - Registration with configuration validation
    - Location-filtered, health-preferring random selection
    - At most one active tunnel at any time
    - Periodic background health checks
    - Select-then-connect serialized under one lock; health checks and
      tunnel transitions serialized per point

    Example:
        registry = EgressRegistry()
        point_id = registry.add("Berlin", "de", config_text)

        point = await registry.connect_best("de")
        if point:
            # Outbound traffic now leaves through the tunnel
            ...
    """

    def __init__(
        self,
        tunnel: WireGuardTunnel | None = None,
        probe: HttpReachabilityProbe | None = None,
        config_dir: Path | str | None = None,
        health_check_interval: float | None = None,
        probe_timeout: float | None = None,
    ):
        """
        Initialize the registry.

        Args:
            tunnel: Tunnel control capability (wg-quick by default)
            probe: Reachability probe capability (HTTP HEAD by default)
            config_dir: Directory for per-point config files (default from config)
            health_check_interval: Seconds between health checks (default from config)
            probe_timeout: Probe timeout in seconds (default from config)
        """
        self._tunnel = tunnel or WireGuardTunnel()
        self._probe = probe or HttpReachabilityProbe()
        self._config_dir = Path(config_dir) if config_dir else config.egress.config_dir
        self._health_check_interval = health_check_interval or config.egress.health_check_interval
        self._probe_timeout = probe_timeout or config.egress.probe_timeout

        self._points: dict[str, EgressPoint] = {}
        self._active_id: Optional[str] = None
        self._last_probe: dict[str, ProbeResult] = {}

        self._switch_lock = asyncio.Lock()
        self._point_locks: dict[str, asyncio.Lock] = {}

        self._health_check_task: Optional[asyncio.Task] = None
        self._probe_tasks: set[asyncio.Task] = set()

    # Registration

    def seed_defaults(self, private_key: str) -> int:
        """
        Register the default egress points.

        Args:
            private_key: Interface private key shared by the defaults

        Returns:
            Number of points registered
        """
        count = 0
        for point_id, name, location, endpoint, public_key in DEFAULT_POINTS:
            if point_id in self._points:
                continue
            config_text = render_config(private_key, endpoint, public_key)
            parsed = parse_config(config_text)
            self._points[point_id] = EgressPoint(
                id=point_id,
                name=name,
                location=location,
                endpoint=parsed.endpoint,
                config=config_text,
            )
            count += 1
        return count

    def add(self, name: str, location: str, config_text: str) -> str:
        """
        Register a new egress point.

        Args:
            name: Display name
            location: Location code (e.g. "de")
            config_text: WireGuard configuration

        Returns:
            The new point's id

        Raises:
            ConfigValidationError: if the configuration is malformed
        """
        parsed = validate_registration(name, location, config_text)
        return self._register(name, location, config_text, parsed.endpoint)

    def add_many(self, entries: Iterable[dict]) -> list[str]:
        """
        Register several egress points.

        Every entry is validated before any is registered, so a bad entry
        leaves the registry unchanged.

        Args:
            entries: Dicts with "name", "location" and "config" keys

        Returns:
            Ids of the new points, in input order
        """
        validated = []
        for entry in entries:
            name = entry.get("name", "")
            location = entry.get("location", "")
            config_text = entry.get("config", "")
            parsed = validate_registration(name, location, config_text)
            validated.append((name, location, config_text, parsed.endpoint))

        return [self._register(*item) for item in validated]

    async def add_file(
        self,
        file_path: str | Path,
        location: str,
        name: str | None = None,
    ) -> str:
        """
        Register an egress point from a raw .conf file.

        Args:
            file_path: Path to the WireGuard configuration file
            location: Location code
            name: Display name (defaults to the file stem)

        Returns:
            The new point's id
        """
        path = Path(file_path)
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            config_text = await f.read()
        return self.add(name or path.stem, location, config_text)

    def _register(self, name: str, location: str, config_text: str, endpoint: str) -> str:
        point_id = make_point_id(name)
        suffix = 1
        while point_id in self._points:
            suffix += 1
            point_id = f"{make_point_id(name)}-{suffix}"

        self._points[point_id] = EgressPoint(
            id=point_id,
            name=name,
            location=location,
            endpoint=endpoint,
            config=config_text,
        )
        logger.info(f"Added egress point: {name} ({point_id})")

        self._schedule_probe(point_id)
        return point_id

    async def remove(self, point_id: str) -> bool:
        """
        Remove an egress point, disconnecting first if it is active.

        Returns:
            False if the id is unknown
        """
        async with self._switch_lock:
            point = self._points.get(point_id)
            if point is None:
                return False

            if point.is_active:
                await self._disconnect()

            del self._points[point_id]
            self._point_locks.pop(point_id, None)
            self._last_probe.pop(point_id, None)

        self._config_path(point_id).unlink(missing_ok=True)
        logger.info(f"Removed egress point: {point.name} ({point_id})")
        return True

    # Selection

    def select_best(self, location: str | None = None) -> Optional[EgressPoint]:
        """
        Pick a candidate egress point.

        Candidates are restricted to the location when one matches, healthy
        points are preferred, and ties are broken at random.

        Args:
            location: Optional location filter

        Returns:
            An EgressPoint, or None if nothing is registered
        """
        candidates = list(self._points.values())

        if location:
            candidates = [p for p in candidates if p.location == location]

        healthy = [p for p in candidates if p.is_healthy]

        if healthy:
            candidates = healthy
        elif not candidates:
            candidates = list(self._points.values())

        if not candidates:
            return None

        return random.choice(candidates)

    # Connection

    async def connect(self, point_id: str) -> bool:
        """
        Activate an egress point, deactivating the current one first.

        Returns:
            True on success; False leaves no point active

        Raises:
            EgressPointNotFound: if the id is unknown
        """
        point = self._points.get(point_id)
        if point is None:
            raise EgressPointNotFound(point_id)

        async with self._switch_lock:
            return await self._connect(point)

    async def connect_best(self, location: str | None = None) -> Optional[EgressPoint]:
        """
        Select and activate the best egress point as one step.

        Returns:
            The connected point, or None if none was available or connect failed
        """
        async with self._switch_lock:
            point = self.select_best(location)
            if point is None:
                return None

            connected = await self._connect(point)
            return point if connected else None

    async def disconnect(self) -> None:
        """Deactivate the active egress point (no-op if none is active)."""
        async with self._switch_lock:
            await self._disconnect()

    async def _connect(self, point: EgressPoint) -> bool:
        await self._disconnect()

        async with self._lock_for(point.id):
            try:
                config_path = await self._write_config(point)
                await self._tunnel.up(config_path)
            except TunnelToolUnavailable:
                logger.warning(
                    "WireGuard tools not available. Simulating VPN connection for development."
                )
            except (TunnelError, OSError) as e:
                logger.error(f"Failed to connect to egress point {point.name}: {e}")
                return False

            point.is_active = True
            self._active_id = point.id

        logger.info(f"Connected to egress point: {point.name} ({point.id})")
        return True

    async def _disconnect(self) -> None:
        if self._active_id is None:
            return

        point = self._points.get(self._active_id)
        if point is None:
            self._active_id = None
            return

        async with self._lock_for(point.id):
            try:
                await self._tunnel.down(self._config_path(point.id))
            except TunnelToolUnavailable:
                logger.warning(
                    "WireGuard tools not available. Simulating VPN disconnection for development."
                )
            except (TunnelError, OSError) as e:
                # the tunnel is unusable either way; never leave two points active
                logger.error(f"Failed to disconnect from egress point {point.name}: {e}")

            point.is_active = False
            self._active_id = None

        logger.info(f"Disconnected from egress point: {point.name}")

    def _config_path(self, point_id: str) -> Path:
        return self._config_dir / f"{point_id}.conf"

    async def _write_config(self, point: EgressPoint) -> Path:
        """Write the point's config to a file readable only by this process owner."""
        self._config_dir.mkdir(parents=True, exist_ok=True)
        path = self._config_path(point.id)

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.close(fd)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(point.config)

        return path

    def _lock_for(self, point_id: str) -> asyncio.Lock:
        return self._point_locks.setdefault(point_id, asyncio.Lock())

    # Health

    async def check_health(self, point_id: str) -> Optional[bool]:
        """
        Probe a single egress point.

        Returns:
            The new health flag, or None if the id is unknown
        """
        point = self._points.get(point_id)
        if point is None:
            return None

        async with self._lock_for(point_id):
            try:
                result = await self._probe.check(point.host, point.port, self._probe_timeout)
            except Exception as e:
                result = ProbeResult(healthy=False, error=str(e) or type(e).__name__)

            if self._points.get(point_id) is not point:
                # removed while the probe was in flight
                return None

            point.is_healthy = result.healthy
            point.last_health_check = time.time()
            self._last_probe[point_id] = result

        if result.healthy:
            logger.debug(f"Health check for {point.name}: OK ({result.response_time or 0:.3f}s)")
        else:
            logger.info(f"Health check for {point.name}: FAILED ({result.error})")

        return result.healthy

    async def check_all_health(self) -> dict:
        """
        Health check all egress points concurrently.

        Returns:
            Dict with health check results
        """
        point_ids = list(self._points)
        checks = await asyncio.gather(*(self.check_health(pid) for pid in point_ids))

        healthy = sum(1 for c in checks if c)
        return {"total": len(point_ids), "healthy": healthy, "unhealthy": len(point_ids) - healthy}

    async def _health_check_loop(self) -> None:
        """Background task for periodic health checks."""
        while True:
            await self.check_all_health()
            await asyncio.sleep(self._health_check_interval)

    def start_health_checks(self) -> None:
        """Start background health check task."""
        if self._health_check_task is None:
            self._health_check_task = asyncio.create_task(self._health_check_loop())

    def stop_health_checks(self) -> None:
        """Stop background health check task."""
        if self._health_check_task:
            self._health_check_task.cancel()
            self._health_check_task = None

    def _schedule_probe(self, point_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet; the periodic health check picks the point up
            return

        task = loop.create_task(self.check_health(point_id))
        self._probe_tasks.add(task)
        task.add_done_callback(self._probe_tasks.discard)

    def health_status(self) -> list[EgressHealth]:
        """Per-point health records."""
        records = []
        for point in self._points.values():
            probe = self._last_probe.get(point.id)
            records.append(EgressHealth(
                id=point.id,
                name=point.name,
                location=point.location,
                endpoint=point.endpoint,
                is_healthy=point.is_healthy,
                last_check=point.last_health_check or time.time(),
                response_time=probe.response_time if probe else None,
                error=probe.error if probe else None,
            ))
        return records

    # Lifecycle

    async def close(self) -> None:
        """Stop health checks and bring the active tunnel down."""
        self.stop_health_checks()
        for task in list(self._probe_tasks):
            task.cancel()
        await self.disconnect()

    # Queries

    def get(self, point_id: str) -> Optional[EgressPoint]:
        return self._points.get(point_id)

    def get_active(self) -> Optional[EgressPoint]:
        """The active egress point, if any."""
        return self._points.get(self._active_id) if self._active_id else None

    def list_points(self) -> list[EgressPoint]:
        return list(self._points.values())

    def points_by_location(self, location: str) -> list[EgressPoint]:
        return [p for p in self._points.values() if p.location == location]

    def get_stats(self) -> dict:
        """Get registry statistics."""
        healthy = self.healthy_count
        return {
            "total": len(self._points),
            "healthy": healthy,
            "unhealthy": len(self._points) - healthy,
            "active": self._active_id,
        }

    @property
    def size(self) -> int:
        """Total number of registered egress points."""
        return len(self._points)

    @property
    def healthy_count(self) -> int:
        """Number of healthy egress points."""
        return sum(1 for p in self._points.values() if p.is_healthy)
