"""
Data model shared by the pool, registry, recovery controller and handler.
"""

import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ChallengeOutcome(Enum):
    """Classification of a single fetch outcome."""
    NONE = "none"
    RATE_LIMITED = "rate_limited"
    MANAGED_CHALLENGE = "managed_challenge"


@dataclass(frozen=True)
class ScrapeRequest:
    """Immutable description of one scrape."""

    url: str
    infinite_scroll: bool = False
    wait_for_network: bool = False
    max_scrolls: Optional[int] = None
    location: Optional[str] = None
    lightweight: bool = False
    screenshot: bool = False
    block_resources: bool = True

    def __post_init__(self):
        if not self.url:
            raise ValueError("url is required")
        if self.screenshot and self.lightweight:
            raise ValueError("screenshot and lightweight fetch are mutually exclusive")
        if self.max_scrolls is not None and self.max_scrolls < 0:
            raise ValueError("max_scrolls must not be negative")


@dataclass
class NavigationResponse:
    """What one navigation observed for the main document."""

    status: int
    status_text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""
    body: Optional[bytes] = None


@dataclass
class EgressPoint:
    """A named tunnel configuration that changes the outbound network origin."""

    id: str
    name: str
    location: str
    endpoint: str
    config: str = field(repr=False)
    is_active: bool = False
    is_healthy: bool = False
    last_health_check: Optional[float] = None

    @property
    def host(self) -> str:
        return self.endpoint.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        _, _, port = self.endpoint.rpartition(":")
        return int(port) if port.isdigit() else 80

    def to_dict(self) -> dict:
        """Public view (the configuration secret is never included)."""
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "endpoint": self.endpoint,
            "is_active": self.is_active,
            "is_healthy": self.is_healthy,
            "last_health_check": self.last_health_check,
        }


@dataclass
class EgressHealth:
    """Health record for one egress point."""

    id: str
    name: str
    location: str
    endpoint: str
    is_healthy: bool
    last_check: float
    response_time: Optional[float] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CaptchaTask:
    """Challenge parameters captured from the page."""

    kind: str
    site_key: str
    page_url: str
    action: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CaptchaSolution:
    """Token returned by the CAPTCHA oracle."""

    token: str
    task_id: Optional[str] = None


@dataclass
class ScrapeResult:
    """Normalized result of a single scrape."""

    url: str
    status: int = 0
    status_text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    final_url: str = ""
    egress_point: Optional[EgressPoint] = None
    content_type: str = "text/html"
    duration: float = 0.0
    acquire_time: float = 0.0
    attempts: int = 1
    captcha_solves: int = 0
    failovers: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.status > 0

    def response_headers(self) -> Dict[str, str]:
        """Upstream headers (line breaks stripped) plus diagnostic headers."""
        headers = {
            name: str(value).replace("\r", " ").replace("\n", " ")
            for name, value in self.headers.items()
        }
        headers["X-Scrape-Duration-Ms"] = str(int(self.duration * 1000))
        headers["X-Scrape-Final-Url"] = self.final_url
        headers["X-Scrape-Egress-Point"] = self.egress_point.id if self.egress_point else "none"
        headers["X-Session-Acquire-Time-Ms"] = str(int(self.acquire_time * 1000))
        return headers

    def to_dict(self) -> dict:
        """Convert to the JSON response envelope."""
        data = {
            "status": self.status,
            "statusText": self.status_text,
            "url": self.final_url or self.url,
            "durationMs": int(self.duration * 1000),
            "contentType": self.content_type,
            "contentsBase64": base64.b64encode(self.body or b"").decode("ascii"),
            "headers": self.response_headers(),
            "egressPoint": self.egress_point.id if self.egress_point else None,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class OrchestratorStats:
    """Statistics for an orchestrator's lifetime."""

    started_at: float = field(default_factory=time.time)
    requests: int = 0
    successful: int = 0
    failed: int = 0
    lightweight_fetches: int = 0
    captcha_solves: int = 0
    failovers: int = 0

    @property
    def uptime(self) -> float:
        """Uptime in seconds."""
        return time.time() - self.started_at

    @property
    def success_rate(self) -> float:
        """Success rate percentage."""
        if self.requests == 0:
            return 0.0
        return (self.successful / self.requests) * 100

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "uptime_seconds": round(self.uptime, 2),
            "requests": self.requests,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": round(self.success_rate, 2),
            "lightweight_fetches": self.lightweight_fetches,
            "captcha_solves": self.captcha_solves,
            "failovers": self.failovers,
        }
