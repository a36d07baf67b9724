"""
Fixed-size pool of reusable rendering sessions with exclusive leases.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from docgraph.exceptions import PoolClosedError
from docgraph.observability import gauge
from docgraph.protocols import SessionFactory

logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class PooledSession:
    """A session owned by the pool: either idle or leased to exactly one caller."""

    handle: Any
    session_id: int
    in_use: bool = False
    last_used: float = field(default=0.0)


class ResourcePool:
    """
    Leases rendering sessions to crawl tasks.

    ``acquire`` blocks on an idle queue until a session frees up; ``release``
    resets the session and hands it back. A failed reset is logged and the
    session is returned anyway, so a session can never leak as permanently
    leased.
    """

    def __init__(self, factory: SessionFactory, size: int):
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self.factory = factory
        self.size = size
        self._sessions: List[PooledSession] = []
        self._idle: asyncio.Queue[PooledSession] = asyncio.Queue()
        self._closed = False
        self._is_initialized = False

        # Lease accounting
        self._in_use = 0
        self._peak_in_use = 0
        self._leases = 0
        self._releases = 0
        self._reset_failures = 0

    async def initialize(self) -> None:
        """Create all sessions up front."""
        if self._is_initialized:
            return
        await self.factory.start()
        for session_id in range(self.size):
            handle = await self.factory.create()
            session = PooledSession(handle=handle, session_id=session_id)
            self._sessions.append(session)
            self._idle.put_nowait(session)
        self._is_initialized = True
        logger.info("Resource pool initialized", size=self.size)

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def idle_count(self) -> int:
        return self._idle.qsize()

    async def acquire(self) -> PooledSession:
        """Lease an idle session, waiting until one is released if necessary."""
        if self._closed:
            raise PoolClosedError("Resource pool is closed")
        if not self._is_initialized:
            raise RuntimeError("Resource pool not initialized. Call initialize() first.")

        session = await self._idle.get()
        if self._closed:
            raise PoolClosedError("Resource pool is closed")

        session.in_use = True
        session.last_used = time.monotonic()
        self._in_use += 1
        self._leases += 1
        self._peak_in_use = max(self._peak_in_use, self._in_use)
        gauge("pool_sessions_in_use", self._in_use)
        return session

    async def release(self, session: PooledSession) -> None:
        """Reset a leased session and return it to the idle pool."""
        if session not in self._sessions:
            logger.warning("Release of a session not owned by this pool", session_id=session.session_id)
            return
        if not session.in_use:
            logger.warning("Session released twice", session_id=session.session_id)
            return

        try:
            if not self._closed:
                await self.factory.reset(session.handle)
        except Exception as e:
            self._reset_failures += 1
            logger.warning("Failed to reset session", session_id=session.session_id, error=str(e))
        finally:
            session.in_use = False
            session.last_used = time.monotonic()
            self._in_use -= 1
            self._releases += 1
            gauge("pool_sessions_in_use", self._in_use)
            self._idle.put_nowait(session)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[PooledSession]:
        """Context manager pairing one acquire with exactly one release."""
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def close(self) -> None:
        """Destroy every session and release the factory's shared resources."""
        if self._closed:
            return
        self._closed = True

        errors: List[Exception] = []
        for session in self._sessions:
            try:
                await self.factory.destroy(session.handle)
            except Exception as e:
                logger.error("Error closing session", session_id=session.session_id, error=str(e))
                errors.append(e)
        try:
            await self.factory.close()
        except Exception as e:
            logger.error("Error closing session factory", error=str(e))
            errors.append(e)

        logger.info("Resource pool closed", leases=self._leases, releases=self._releases)
        if errors:
            raise errors[0]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "in_use": self._in_use,
            "idle": self._idle.qsize(),
            "peak_in_use": self._peak_in_use,
            "leases": self._leases,
            "releases": self._releases,
            "reset_failures": self._reset_failures,
            "closed": self._closed,
        }
