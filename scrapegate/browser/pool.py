"""
Session Pool Module

Bounded pool of browser sessions with liveness-checked creation, idle
eviction, and engine relaunch when a session cannot be closed cleanly.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Optional

from scrapegate.browser.engine import BrowserEngine
from scrapegate.browser.session import Session
from scrapegate.config import config
from scrapegate.errors import SessionCreationFailure


logger = logging.getLogger(__name__)


class SessionPool:
    """
    Manages a bounded set of sessions over one rendering engine.

    Features:
    - Lazy creation up to ``max_size`` sessions; callers beyond that wait
    - Liveness check before every creation, relaunching the engine
      between failed attempts
    - Faulted sessions are destroyed, never reused
    - Periodic eviction of sessions idle past ``idle_timeout``

    Example:
        pool = SessionPool(engine)
        session = await pool.acquire()
        try:
            ...
        except Exception:
            await pool.destroy(session)
            raise
        else:
            await pool.release(session)
    """

    def __init__(
        self,
        engine: BrowserEngine,
        max_size: int | None = None,
        idle_timeout: float | None = None,
        eviction_interval: float | None = None,
        create_attempts: int | None = None,
        liveness_timeout: float | None = None,
    ):
        """
        Initialize the pool.

        Args:
            engine: Rendering engine the sessions are opened on
            max_size: Maximum open sessions (default from config)
            idle_timeout: Seconds before an idle session is evicted (default from config)
            eviction_interval: Seconds between eviction sweeps (default from config)
            create_attempts: Creation attempts before failing (default from config)
            liveness_timeout: Seconds allowed for the liveness check and page setup (default from config)
        """
        self._engine = engine
        self._max_size = max_size or config.pool.max_sessions
        self._idle_timeout = idle_timeout or config.pool.idle_timeout
        self._eviction_interval = eviction_interval or config.pool.eviction_interval
        self._create_attempts = create_attempts or config.pool.create_attempts
        self._liveness_timeout = liveness_timeout or config.pool.liveness_timeout

        self._idle: deque[Session] = deque()
        self._leased: dict[str, Session] = {}
        self._size = 0  # idle + leased + being created
        self._condition = asyncio.Condition()
        self._launch_lock = asyncio.Lock()
        self._closed = False

        self._eviction_task: Optional[asyncio.Task] = None

    async def acquire(self) -> Session:
        """
        Get a session, creating one if under the limit or waiting for a release.

        Raises:
            SessionCreationFailure: if the engine stays unreachable
        """
        stale: list[Session] = []

        async with self._condition:
            while True:
                if self._closed:
                    raise RuntimeError("Session pool is closed")

                session = None
                while self._idle:
                    candidate = self._idle.pop()
                    if self._is_stale(candidate):
                        stale.append(candidate)
                        self._size -= 1
                    else:
                        session = candidate
                        break

                if session is not None:
                    self._leased[session.id] = session
                    session.touch()
                    break

                if self._size < self._max_size:
                    self._size += 1
                    break

                await self._condition.wait()

        for candidate in stale:
            await self._close_session(candidate)

        if session is not None:
            return session

        try:
            session = await self._create()
        except BaseException:
            async with self._condition:
                self._size -= 1
                self._condition.notify()
            raise

        self._leased[session.id] = session
        return session

    async def release(self, session: Session) -> None:
        """Return a healthy session for reuse."""
        if self._leased.pop(session.id, None) is None:
            logger.warning(f"pool: release of unknown session {session.id}")
            return

        if self._closed or self._is_stale(session):
            await self._dispose(session)
            return

        session.touch()
        async with self._condition:
            self._idle.append(session)
            self._condition.notify()

    async def destroy(self, session: Session) -> None:
        """Permanently dispose of a session that faulted during use."""
        if self._leased.pop(session.id, None) is None:
            logger.warning(f"pool: destroy of unknown session {session.id}")
            return

        session.healthy = False
        await self._dispose(session)

    async def evict_idle(self) -> int:
        """
        Close sessions idle past the threshold.

        Returns:
            Number of sessions evicted
        """
        now = time.time()
        expired: list[Session] = []

        async with self._condition:
            kept: deque[Session] = deque()
            for session in self._idle:
                if now - session.last_used >= self._idle_timeout or self._is_stale(session):
                    expired.append(session)
                else:
                    kept.append(session)

            self._idle = kept
            if expired:
                self._size -= len(expired)
                self._condition.notify_all()

        for session in expired:
            logger.info(f"pool: evicting idle session {session.id}")
            await self._close_session(session)

        return len(expired)

    async def _create(self) -> Session:
        last_error = ""

        for attempt in range(1, self._create_attempts + 1):
            generation = self._engine.generation
            try:
                generation = await self._ensure_engine()

                # throwaway page first; a hung browser fails here, not mid-request
                await asyncio.wait_for(self._engine.check_liveness(), self._liveness_timeout)

                session = await asyncio.wait_for(self._engine.new_session(), self._liveness_timeout)
                logger.info(f"pool: created session {session.id}")
                return session

            except Exception as e:
                last_error = str(e)
                if isinstance(e, asyncio.TimeoutError):
                    last_error = f"browser did not respond within {self._liveness_timeout}s"
                logger.warning(f"Cannot create a session. Attempt {attempt}. Error: {last_error}")

                if attempt < self._create_attempts:
                    await self._reset_engine(generation)

        raise SessionCreationFailure(self._create_attempts, last_error)

    async def _ensure_engine(self) -> int:
        """Launch the engine once for all concurrent creators; returns its generation."""
        async with self._launch_lock:
            if not self._engine.is_running:
                await self._engine.launch()
            return self._engine.generation

    async def _reset_engine(self, generation: int) -> None:
        """Close the engine after a failed attempt unless someone already replaced it."""
        async with self._launch_lock:
            if self._engine.generation == generation:
                await self._engine.close()

    async def _dispose(self, session: Session) -> None:
        async with self._condition:
            self._size -= 1
            self._condition.notify()

        await self._close_session(session)

    async def _close_session(self, session: Session) -> None:
        """Close a session; if that fails, relaunch the whole engine."""
        if session.is_closed or session.generation != self._engine.generation:
            # its browser is already gone
            return

        try:
            await session.close()
            logger.debug(f"pool: closed session {session.id}")
            return
        except Exception as e:
            logger.warning(f"Failed to close session {session.id}: {e}. Resetting the browser.")

        try:
            async with self._launch_lock:
                await self._engine.relaunch()
        except Exception as e:
            # the next acquire launches it again
            logger.error(f"Browser relaunch failed: {e}")

    def _is_stale(self, session: Session) -> bool:
        return (
            not session.healthy
            or session.generation != self._engine.generation
            or session.is_closed
        )

    async def _eviction_loop(self) -> None:
        """Background task for periodic idle eviction."""
        while True:
            await asyncio.sleep(self._eviction_interval)
            await self.evict_idle()

    def start_eviction(self) -> None:
        """Start background eviction task."""
        if self._eviction_task is None:
            self._eviction_task = asyncio.create_task(self._eviction_loop())

    def stop_eviction(self) -> None:
        """Stop background eviction task."""
        if self._eviction_task:
            self._eviction_task.cancel()
            self._eviction_task = None

    async def close(self) -> None:
        """Close idle sessions; leased sessions are closed when handed back."""
        self.stop_eviction()

        async with self._condition:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._size -= len(idle)
            self._condition.notify_all()

        for session in idle:
            await self._close_session(session)

    def get_stats(self) -> dict:
        """Get pool statistics."""
        return {
            "size": self._size,
            "idle": len(self._idle),
            "leased": len(self._leased),
            "max_size": self._max_size,
        }

    @property
    def size(self) -> int:
        """Sessions currently open or being created."""
        return self._size

    @property
    def idle_count(self) -> int:
        return len(self._idle)
