"""
Configuration module for ScrapeGate.

Uses Pydantic Settings for type-safe configuration with environment variable support.
"""

from pathlib import Path
from typing import Literal
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BrowserConfig(BaseSettings):
    """Rendering engine (headless browser) configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPEGATE_BROWSER_")

    headless: bool = Field(default=True, description="Run browser in headless mode")
    launch_timeout: int = Field(default=180000, description="Browser launch timeout in milliseconds")
    args: list[str] = Field(default=["--no-sandbox"], description="Extra browser launch arguments")
    proxy_server: str | None = Field(default=None, description="Upstream proxy server for the browser")

    # Resource blocking
    blocked_resource_types: list[str] = Field(
        default=["image", "stylesheet", "media", "font"],
        description="Resource types aborted when resource blocking is on",
    )


class PoolConfig(BaseSettings):
    """Session pool configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPEGATE_POOL_")

    max_sessions: int = Field(default=2, ge=1, description="Maximum concurrently open sessions")
    idle_timeout: float = Field(default=600.0, description="Seconds a session may stay idle")
    eviction_interval: float = Field(default=600.0, description="Seconds between idle sweeps")
    create_attempts: int = Field(default=5, ge=1, description="Session creation attempts before failing")
    liveness_timeout: float = Field(default=30.0, gt=0, description="Deadline for the liveness check and page setup (seconds)")


class NavigationConfig(BaseSettings):
    """Navigation, network-wait and progressive reveal configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPEGATE_NAV_")

    timeout: float = Field(default=180.0, description="Overall navigation deadline (seconds)")
    network_idle_timeout: float = Field(default=120.0, description="Network quiescence wait (seconds)")
    challenge_idle_timeout: float = Field(
        default=300.0,
        description="Network quiescence wait after a challenge solution (seconds)",
    )

    # Progressive reveal (infinite scroll)
    max_reveal_iterations: int = Field(default=20, description="Default maximum scroll iterations")
    reveal_growth_timeout: float = Field(default=20.0, description="Per-iteration content growth wait")
    reveal_scroll_delay: float = Field(default=0.8, description="Pause between scroll iterations")
    reveal_nudge_pause: float = Field(default=1.0, description="Pause after nudging the scroll up")
    reveal_nudge_offset: int = Field(default=500, description="Pixels to nudge up from the bottom")

    failure_screenshot_dir: Path = Field(
        default=Path("storage/failures"),
        description="Where failure screenshots are written",
    )


class EgressConfig(BaseSettings):
    """Egress point (WireGuard VPN) configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPEGATE_EGRESS_")

    config_dir: Path = Field(default=Path("wireguard-configs"), description="Per-point config files")
    health_check_interval: float = Field(default=300.0, description="Seconds between health checks")
    probe_timeout: float = Field(default=5.0, description="Reachability probe timeout (seconds)")
    settle_delay: float = Field(default=2.0, description="Wait after connecting before retrying")
    max_failovers: int = Field(default=2, ge=0, description="Egress failovers allowed per request")
    tunnel_command: str = Field(default="wg-quick", description="Tunnel control tool")
    seed_defaults: bool = Field(default=True, description="Register the default egress points")
    private_key: str | None = Field(
        default=None,
        description="Interface private key used for the default egress points",
    )


class CaptchaConfig(BaseSettings):
    """CAPTCHA oracle configuration."""

    model_config = SettingsConfigDict(env_prefix="SCRAPEGATE_CAPTCHA_")

    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SCRAPEGATE_CAPTCHA_API_KEY", "TWOCAPTCHA_API_KEY"),
        description="2captcha API key",
    )
    base_url: str = Field(default="https://2captcha.com", description="2captcha API base URL")
    poll_interval: float = Field(default=5.0, description="Seconds between result polls")
    solve_timeout: float = Field(default=180.0, description="Maximum seconds to wait for a solution")
    capture_timeout: float = Field(
        default=15.0,
        description="Seconds to wait for the page to register its challenge widget",
    )


class ScrapeGateConfig(BaseSettings):
    """Main configuration aggregating all sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="SCRAPEGATE_",
        env_nested_delimiter="__",
    )

    # Sub-configurations
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    navigation: NavigationConfig = Field(default_factory=NavigationConfig)
    egress: EgressConfig = Field(default_factory=EgressConfig)
    captcha: CaptchaConfig = Field(default_factory=CaptchaConfig)

    # Recovery
    max_captcha_attempts: int = Field(
        default=2,
        description="Navigations allowed on the CAPTCHA path (original + one retry)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    def ensure_directories(self) -> None:
        """Create necessary working directories if they don't exist."""
        self.egress.config_dir.mkdir(parents=True, exist_ok=True)
        self.navigation.failure_screenshot_dir.mkdir(parents=True, exist_ok=True)


# Global config instance (can be overridden)
config = ScrapeGateConfig()
