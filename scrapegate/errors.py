"""
Error taxonomy for ScrapeGate.

Request-level faults surface to callers; challenge and tunnel faults are
mostly contained and degrade to returning the blocked response or a
simulated connection.
"""


class ScrapeGateError(Exception):
    """Base class for all ScrapeGate errors."""


class SessionCreationFailure(ScrapeGateError):
    """The rendering engine stayed unreachable after bounded relaunch attempts."""

    def __init__(self, attempts: int, reason: str = ""):
        self.attempts = attempts
        message = f"Cannot create a new session after {attempts} attempts"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NavigationFailure(ScrapeGateError):
    """Navigation timed out or failed at the transport level."""

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        super().__init__(f"Navigation to {url!r} failed: {reason}" if reason else f"Navigation to {url!r} failed")


class ChallengeUnresolved(ScrapeGateError):
    """A block could not be recovered from (oracle failure, no usable egress point)."""


class MaxAttemptsExceeded(ScrapeGateError):
    """The page kept presenting a challenge after the allowed retries."""

    def __init__(self, url: str, attempts: int):
        self.url = url
        self.attempts = attempts
        super().__init__(f"Max scrape attempts {attempts} exceeded while trying to scrape {url!r}")


class ConfigValidationError(ScrapeGateError, ValueError):
    """An egress configuration is malformed or incomplete."""


class EgressPointNotFound(ScrapeGateError, KeyError):
    """No egress point is registered under the given id."""

    def __init__(self, point_id: str):
        self.point_id = point_id
        super().__init__(f"Egress point {point_id!r} not found")

    def __str__(self) -> str:
        return self.args[0]


class TunnelToolUnavailable(ScrapeGateError):
    """The tunnel control tool is not installed in this environment."""


class TunnelError(ScrapeGateError):
    """The tunnel control tool ran but reported a failure."""


class CaptchaSolveError(ScrapeGateError):
    """The CAPTCHA oracle rejected the task or did not return a token in time."""
