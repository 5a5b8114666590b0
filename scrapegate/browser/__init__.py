"""Browser module - rendering engine, sessions and the session pool."""

from .engine import BrowserEngine
from .pool import SessionPool
from .session import ChallengeChannel, Session

__all__ = ["BrowserEngine", "SessionPool", "Session", "ChallengeChannel"]
