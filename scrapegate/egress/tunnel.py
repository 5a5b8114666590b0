"""
Tunnel control capability.

Brings a WireGuard tunnel up or down by invoking ``wg-quick`` on a
configuration file. Requires root privileges on the host; when the tool is
missing altogether ``TunnelToolUnavailable`` is raised so callers can
degrade to a simulated connection.
"""

import asyncio
import logging
import shutil
from pathlib import Path

from scrapegate.config import config
from scrapegate.errors import TunnelError, TunnelToolUnavailable


logger = logging.getLogger(__name__)


class WireGuardTunnel:
    """
    Async wrapper around the ``wg-quick`` command line tool.

    Example:
        tunnel = WireGuardTunnel()
        await tunnel.up(Path("wireguard-configs/berlin-de.conf"))
    """

    def __init__(self, command: str | None = None, timeout: float = 60.0):
        self._command = command or config.egress.tunnel_command
        self._timeout = timeout

    def is_available(self) -> bool:
        """Check whether the tunnel tool is installed."""
        return shutil.which(self._command) is not None

    async def up(self, config_path: Path) -> None:
        await self._run("up", config_path)

    async def down(self, config_path: Path) -> None:
        await self._run("down", config_path)

    async def _run(self, action: str, config_path: Path) -> None:
        if not self.is_available():
            raise TunnelToolUnavailable(f"{self._command} is not installed")

        process = await asyncio.create_subprocess_exec(
            self._command,
            action,
            str(config_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TunnelError(f"{self._command} {action} timed out after {self._timeout}s")

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise TunnelError(f"{self._command} {action} exited with {process.returncode}: {message}")

        logger.debug(f"{self._command} {action} {config_path.name}: ok")
