"""Background sweep that expires idle anonymous quota rows.

Anonymous ledger rows carry an ``expires_at`` stamp that every write pushes
forward.  The sweeper periodically deletes rows whose stamp has passed so
that hashed client addresses are not retained indefinitely.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from scan_engine.models.quota import PrincipalKind
from scan_engine.state.database import session_scope
from scan_engine.state.repository import QuotaLedgerRepository
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RetentionSweeper:
    """AsyncIO background task purging expired anonymous ledger rows.

    Parameters
    ----------
    session_factory:
        Factory for the session each sweep runs in.
    interval_seconds:
        Delay between sweeps.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._clock = clock
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("RetentionSweeper already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("RetentionSweeper started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("RetentionSweeper stopped")

    async def sweep_once(self) -> int:
        """Delete expired anonymous rows and return how many were removed."""
        async with session_scope(self._session_factory) as session:
            removed = await QuotaLedgerRepository(session, PrincipalKind.ANONYMOUS).purge_expired(self._clock())
        if removed:
            logger.info("Retention sweep removed %d expired anonymous ledger row(s)", removed)
        return removed

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("Retention sweep database error: %s", exc, exc_info=True)
            await asyncio.sleep(self._interval)
