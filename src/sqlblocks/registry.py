"""Session registry: named engine processes, spawned on first use.

Usage::

    registry = SessionRegistry(settings, router=router, tracker=tracker, notifier=notifier)
    session = await registry.get_or_create("analytics", database="warehouse.duckdb")
    ...
    await registry.delete("analytics")
    await registry.close()
"""

from __future__ import annotations

import asyncio
import logging

from sqlblocks.completion import CompletionRouter
from sqlblocks.config import Settings
from sqlblocks.events import Notifier
from sqlblocks.session import Session
from sqlblocks.status import StatusTracker

log = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


class SessionRegistry:
    """Name -> live :class:`Session` map.

    A session is inserted only after its startup handshake succeeded, so a
    failed start leaves no entry behind.  Concurrent ``get_or_create`` calls
    for the same name share one spawn.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        router: CompletionRouter,
        tracker: StatusTracker,
        notifier: Notifier,
    ) -> None:
        self._settings = settings
        self._router = router
        self._tracker = tracker
        self._notifier = notifier
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def names(self) -> list[str]:
        return list(self._sessions)

    def get(self, name: str) -> Session | None:
        return self._sessions.get(name)

    async def get_or_create(
        self, name: str = DEFAULT_SESSION, database: str | None = None
    ) -> Session:
        """Return the live session *name*, spawning it if needed.

        An existing live session is returned as-is even if *database*
        differs.  Sessions whose process exited are dropped first.
        """
        await self.cleanup_dead()
        while True:
            lock = self._locks.setdefault(name, asyncio.Lock())
            async with lock:
                # The lock was dropped while we waited on it.
                if self._locks.get(name) is not lock:
                    continue
                session = self._sessions.get(name)
                if session is not None and session.alive:
                    return session
                if session is not None:
                    log.info("Session '%s' is dead; respawning", name)
                    del self._sessions[name]
                    await session.close(grace=0)
                session = Session(
                    name,
                    settings=self._settings,
                    router=self._router,
                    tracker=self._tracker,
                    notifier=self._notifier,
                    database=database or self._settings.engine.database,
                )
                try:
                    await session.start()
                except BaseException:
                    self._locks.pop(name, None)
                    raise
                self._sessions[name] = session
                return session

    async def delete(self, name: str) -> bool:
        """Shut down and forget session *name*. Returns False if unknown."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            session = self._sessions.pop(name, None)
            if session is not None:
                await session.close()
        if self._locks.get(name) is lock:
            del self._locks[name]
        return session is not None

    def list(self) -> list[str]:
        """Names of live sessions; entries whose process exited are dropped."""
        for name, session in list(self._sessions.items()):
            if not session.alive:
                log.warning("Pruning dead session '%s'", name)
                del self._sessions[name]
        return list(self._sessions)

    async def cleanup_dead(self) -> list[str]:
        """Drop sessions whose process has exited; returns their names."""
        dead = [name for name, session in self._sessions.items() if not session.alive]
        for name in dead:
            await self.delete(name)
        return dead

    async def close(self) -> None:
        for name in list(self._sessions):
            try:
                await self.delete(name)
            except Exception:
                log.exception("Failed to close session '%s'", name)
