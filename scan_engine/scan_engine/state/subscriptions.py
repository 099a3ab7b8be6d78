"""Push-style views over the state store.

Subscriptions are async iterators that poll the store and yield only when
the observed document (or result set) changes.  Consumers cancel a
subscription by breaking out of the loop or calling ``aclose()``; no
callback registry or background task is involved.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scan_engine.models.scan import ScanRecord
from scan_engine.state.repository import ScanRepository

logger = logging.getLogger(__name__)

_DEFAULT_INTERVAL = 1.0


def _fingerprint(record: ScanRecord) -> tuple[object, ...]:
    return (record.status, record.progress, record.error_code, record.updated_at)


async def watch_scan(
    session_factory: async_sessionmaker[AsyncSession],
    scan_id: str,
    *,
    interval: float = _DEFAULT_INTERVAL,
) -> AsyncIterator[ScanRecord]:
    """Yield the scan document each time it changes.

    The first value is the current state.  The iterator ends after yielding
    a terminal state, or as soon as the scan no longer exists.
    """
    last: tuple[object, ...] | None = None
    while True:
        async with session_factory() as session:
            record = await ScanRepository(session).get(scan_id)
        if record is None:
            logger.debug("watch_scan: scan %s not found; ending subscription", scan_id)
            return
        fingerprint = _fingerprint(record)
        if fingerprint != last:
            last = fingerprint
            yield record
            if record.status.terminal:
                return
        await asyncio.sleep(interval)


async def watch_principal_scans(
    session_factory: async_sessionmaker[AsyncSession],
    principal_id: str,
    *,
    limit: int = 20,
    interval: float = _DEFAULT_INTERVAL,
) -> AsyncIterator[list[ScanRecord]]:
    """Yield the principal's newest scans whenever the list changes.

    Runs until the consumer stops iterating.
    """
    last: list[tuple[object, ...]] | None = None
    while True:
        async with session_factory() as session:
            records = await ScanRepository(session).list_for_principal(principal_id, limit=limit)
        fingerprints = [(r.scan_id, *_fingerprint(r)) for r in records]
        if fingerprints != last:
            last = fingerprints
            yield records
        await asyncio.sleep(interval)
