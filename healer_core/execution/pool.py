import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from ..exceptions import PoolExhausted
from .transport import RemoteConnection

logger = logging.getLogger("healer-core.execution.pool")


@dataclass(eq=False)
class RemoteSession:
    """A leased connection to one managed server."""

    server_id: str
    hostname: str
    connection: RemoteConnection
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    in_use: bool = False
    broken: bool = False
    closed: bool = False


class ConnectionPool:
    """
    Per-server session pool.
    Sessions are leased exclusively, validated before reuse, and evicted by a
    background sweeper once idle for longer than max_idle_seconds.
    """

    def __init__(
        self,
        max_size: int = 50,
        max_idle_seconds: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.max_idle_seconds = max_idle_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: Dict[str, List[RemoteSession]] = {}
        self._pending = 0
        self._lock = asyncio.Lock()
        self._running = False
        self._sweeper_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    #  Lifecycle                                                           #
    # ------------------------------------------------------------------ #

    async def start(self):
        if self._sweeper_task:
            return
        self._running = True
        self._sweeper_task = asyncio.create_task(self._sweeper_loop())
        logger.info(
            f"Connection pool started (max_size={self.max_size}, "
            f"max_idle={self.max_idle_seconds}s, sweep every {self.sweep_interval}s)"
        )

    async def stop(self):
        self._running = False
        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        await self.close_all()
        logger.info("Connection pool stopped.")

    async def _sweeper_loop(self):
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                evicted = await self.sweep()
                if evicted:
                    logger.info(f"Evicted {evicted} idle SSH session(s)")
            except Exception as e:
                logger.error(f"Pool sweep failed: {e}", exc_info=True)

    # ------------------------------------------------------------------ #
    #  Leasing                                                             #
    # ------------------------------------------------------------------ #

    def _size(self) -> int:
        return sum(len(sessions) for sessions in self._sessions.values())

    async def acquire(
        self,
        server_id: str,
        factory: Callable[[], Awaitable[RemoteSession]],
    ) -> RemoteSession:
        """Lease an idle healthy session for server_id, or open a new one."""
        while True:
            evicted: Optional[RemoteSession] = None
            async with self._lock:
                candidate = next(
                    (s for s in self._sessions.get(server_id, []) if not s.in_use and not s.broken),
                    None,
                )
                if candidate is not None:
                    candidate.in_use = True
                else:
                    if self._size() + self._pending >= self.max_size:
                        evicted = self._take_oldest_idle()
                        if evicted is None:
                            raise PoolExhausted(
                                f"Connection pool exhausted ({self.max_size} sessions in use)",
                                server_id=server_id,
                            )
                    self._pending += 1

            if candidate is None:
                if evicted is not None:
                    logger.info(
                        f"Pool full; evicted idle session {evicted.id} for server {evicted.server_id} "
                        f"to make room for server {server_id}"
                    )
                    await self._close(evicted)
                break
            if await candidate.connection.is_alive():
                candidate.last_used = self._clock()
                logger.debug(f"Reusing session {candidate.id} for server {server_id}")
                return candidate
            logger.warning(f"Pooled session {candidate.id} for server {server_id} failed health check")
            await self.discard(candidate)

        try:
            session = await factory()
        except BaseException:
            async with self._lock:
                self._pending -= 1
            raise

        async with self._lock:
            self._pending -= 1
            session.in_use = True
            session.last_used = self._clock()
            self._sessions.setdefault(server_id, []).append(session)
        logger.debug(f"Opened session {session.id} for server {server_id}")
        return session

    def _take_oldest_idle(self) -> Optional[RemoteSession]:
        # Caller holds the lock.
        idle = [s for group in self._sessions.values() for s in group if not s.in_use]
        if not idle:
            return None
        oldest = min(idle, key=lambda s: s.last_used)
        group = self._sessions[oldest.server_id]
        group.remove(oldest)
        if not group:
            del self._sessions[oldest.server_id]
        return oldest

    async def release(self, session: RemoteSession):
        if session.broken or session.closed:
            await self.discard(session)
            return
        async with self._lock:
            session.in_use = False
            session.last_used = self._clock()

    async def discard(self, session: RemoteSession):
        async with self._lock:
            sessions = self._sessions.get(session.server_id, [])
            if session in sessions:
                sessions.remove(session)
            if not sessions:
                self._sessions.pop(session.server_id, None)
        await self._close(session)

    async def _close(self, session: RemoteSession):
        if session.closed:
            return
        session.closed = True
        try:
            await session.connection.close()
        except Exception as e:
            logger.warning(f"Error closing session {session.id} for server {session.server_id}: {e}")

    async def sweep(self) -> int:
        """Close sessions idle for longer than max_idle_seconds."""
        now = self._clock()
        expired: List[RemoteSession] = []
        async with self._lock:
            for server_id in list(self._sessions):
                keep = []
                for session in self._sessions[server_id]:
                    if not session.in_use and now - session.last_used > self.max_idle_seconds:
                        expired.append(session)
                    else:
                        keep.append(session)
                if keep:
                    self._sessions[server_id] = keep
                else:
                    del self._sessions[server_id]
        for session in expired:
            await self._close(session)
        return len(expired)

    async def close_all(self):
        async with self._lock:
            sessions = [s for group in self._sessions.values() for s in group]
            self._sessions.clear()
        for session in sessions:
            await self._close(session)

    def stats(self) -> dict:
        in_use = sum(1 for group in self._sessions.values() for s in group if s.in_use)
        total = self._size()
        return {
            "total": total,
            "in_use": in_use,
            "idle": total - in_use,
            "max_size": self.max_size,
            "servers": {server_id: len(group) for server_id, group in self._sessions.items()},
        }
