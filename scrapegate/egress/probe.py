"""
Reachability probe capability.

Checks whether an egress endpoint answers within a bounded timeout. A probe
never raises: timeouts and refused connections are reported as unhealthy.
"""

import time
from dataclasses import dataclass
from typing import Optional

import httpx


@dataclass
class ProbeResult:
    """Outcome of one reachability probe."""

    healthy: bool
    response_time: Optional[float] = None
    error: Optional[str] = None


class HttpReachabilityProbe:
    """
    Probe an endpoint with a HEAD request against ``http://host:port``.

    Any response below 500 counts as reachable.
    """

    async def check(self, host: str, port: int, timeout: float) -> ProbeResult:
        start = time.time()

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.head(f"http://{host}:{port}")
        except httpx.TimeoutException:
            return ProbeResult(healthy=False, error="timed out")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return ProbeResult(healthy=False, error=str(e) or type(e).__name__)

        return ProbeResult(
            healthy=response.status_code < 500,
            response_time=time.time() - start,
            error=None if response.status_code < 500 else f"HTTP {response.status_code}",
        )
