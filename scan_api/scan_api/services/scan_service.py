"""Scan lifecycle: the state machine every scan document moves through.

::

    queued -> running -> succeeded
       \\         \\
        +---------+----> failed   (error_code: CLONE_FAILED | ANALYSIS_FAILED
                                   | CANCELLED | UNKNOWN)

Every transition is a single conditional ``UPDATE`` whose ``WHERE`` clause
names the statuses the transition may start from.  Terminal states match no
guard, which is what makes cancellation sticky: once a scan is
``failed/CANCELLED`` a late ``finish_success`` or progress report from the
background run simply updates zero rows.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from scan_engine.errors import AnalysisError, CloneError
from scan_engine.git.urls import generate_repo_id, parse_repo_url
from scan_engine.models.quota import Principal
from scan_engine.models.scan import (
    ACTIVE_STATUSES,
    CANCELLED_MESSAGE,
    ScanErrorCode,
    ScanRecord,
    ScanStatus,
)
from scan_engine.state.database import session_scope
from scan_engine.state.repository import ScanRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# 100 is reserved for a successful finish.
_MAX_REPORTED_PROGRESS = 99


def _utcnow() -> datetime:
    return datetime.now(UTC)


def classify_failure(exc: BaseException) -> ScanErrorCode:
    """Map a pipeline failure to a scan error code.

    The exception's origin decides first.  Exceptions from outside the
    engine hierarchy fall back to a substring match on the message.
    Never raises.
    """
    if isinstance(exc, CloneError):
        return ScanErrorCode.CLONE_FAILED
    if isinstance(exc, AnalysisError):
        return ScanErrorCode.ANALYSIS_FAILED
    try:
        message = str(exc).lower()
    except Exception:
        return ScanErrorCode.UNKNOWN
    if "clone" in message:
        return ScanErrorCode.CLONE_FAILED
    if "analys" in message:
        return ScanErrorCode.ANALYSIS_FAILED
    return ScanErrorCode.UNKNOWN


class ScanLifecycle:
    """Create, advance and finish scan documents.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each operation commits before
        returning so watchers and cancel requests see it immediately.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create(self, principal: Principal, repo_url: str) -> ScanRecord:
        """Allocate a queued scan for *repo_url* owned by *principal*.

        Callers must have consumed a quota slot first.
        """
        now = self._clock()
        try:
            full_name: str | None = parse_repo_url(repo_url).full_name
        except ValueError:
            full_name = None
        record = ScanRecord(
            scan_id=uuid.uuid4().hex,
            principal_id=principal.id,
            principal_kind=principal.kind,
            repo_id=generate_repo_id(repo_url),
            repo_url=repo_url,
            repo_full_name=full_name,
            status=ScanStatus.QUEUED,
            progress=0,
            queued_at=now,
            created_at=now,
            updated_at=now,
        )
        async with session_scope(self._session_factory) as session:
            await ScanRepository(session).create(record)
        logger.info("Scan %s queued for %s (repo_id=%s)", record.scan_id, repo_url, record.repo_id)
        return record

    async def get(self, scan_id: str) -> ScanRecord | None:
        async with session_scope(self._session_factory) as session:
            return await ScanRepository(session).get(scan_id)

    async def is_cancelled(self, scan_id: str) -> bool:
        record = await self.get(scan_id)
        return record is not None and record.is_cancelled

    async def list_for_principal(self, principal_id: str, limit: int = 20, offset: int = 0) -> list[ScanRecord]:
        async with session_scope(self._session_factory) as session:
            return await ScanRepository(session).list_for_principal(principal_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        scan_id: str,
        from_statuses: tuple[ScanStatus, ...],
        values: dict[str, object],
        max_progress: int | None = None,
    ) -> bool:
        values = {**values, "updated_at": self._clock()}
        async with session_scope(self._session_factory) as session:
            return await ScanRepository(session).transition(
                scan_id,
                from_statuses=from_statuses,
                values=values,
                max_progress=max_progress,
            )

    async def start(self, scan_id: str) -> bool:
        """Move a queued scan to running.  ``False`` if it was cancelled first."""
        now = self._clock()
        started = await self._transition(
            scan_id,
            (ScanStatus.QUEUED,),
            {"status": ScanStatus.RUNNING, "started_at": now, "progress": 0},
        )
        if not started:
            logger.info("Scan %s not started (no longer queued)", scan_id)
        return started

    async def report_progress(self, scan_id: str, pct: int) -> bool:
        """Record progress for a running scan.

        Progress is clamped to ``0..99`` and never moves backwards.  A
        cancelled scan ignores reports without error.
        """
        pct = max(0, min(int(pct), _MAX_REPORTED_PROGRESS))
        if await self.is_cancelled(scan_id):
            return False
        return await self._transition(
            scan_id,
            (ScanStatus.RUNNING,),
            {"progress": pct},
            max_progress=pct,
        )

    async def finish_success(self, scan_id: str, repo_full_name: str | None = None) -> bool:
        """Mark a running scan succeeded.  ``False`` if it already ended."""
        values: dict[str, object] = {
            "status": ScanStatus.SUCCEEDED,
            "progress": 100,
            "finished_at": self._clock(),
        }
        if repo_full_name:
            values["repo_full_name"] = repo_full_name
        finished = await self._transition(scan_id, (ScanStatus.RUNNING,), values)
        if finished:
            logger.info("Scan %s succeeded", scan_id)
        else:
            logger.info("Scan %s finished after it had already ended; result not recorded on the scan", scan_id)
        return finished

    async def finish_failure(
        self,
        scan_id: str,
        error_code: ScanErrorCode,
        message: str | None = None,
    ) -> bool:
        """Mark an active scan failed.  ``False`` if it already ended."""
        failed = await self._transition(
            scan_id,
            ACTIVE_STATUSES,
            {
                "status": ScanStatus.FAILED,
                "error_code": error_code,
                "error_message": message,
                "finished_at": self._clock(),
            },
        )
        if failed:
            logger.warning("Scan %s failed: %s %s", scan_id, error_code.value, message or "")
        return failed

    async def cancel(self, scan_id: str) -> ScanRecord | None:
        """Cancel an active scan; a terminal scan is returned unchanged.

        Returns ``None`` if the scan does not exist.
        """
        cancelled = await self._transition(
            scan_id,
            ACTIVE_STATUSES,
            {
                "status": ScanStatus.FAILED,
                "error_code": ScanErrorCode.CANCELLED,
                "error_message": CANCELLED_MESSAGE,
                "finished_at": self._clock(),
            },
        )
        if cancelled:
            logger.info("Scan %s cancelled by owner", scan_id)
        return await self.get(scan_id)

    async def delete(self, scan_id: str, principal: Principal) -> bool:
        """Delete one of *principal*'s finished scans.

        Raises
        ------
        PermissionError
            If *principal* is anonymous.
        LookupError
            If the scan does not exist or belongs to another principal.
        ValueError
            If the scan is still queued or running.
        """
        if not principal.is_authenticated:
            raise PermissionError("Sign in to delete scans")
        async with session_scope(self._session_factory) as session:
            repo = ScanRepository(session)
            record = await repo.get(scan_id)
            if record is None or record.principal_id != principal.id:
                raise LookupError(f"Scan {scan_id} not found")
            if not record.status.terminal:
                raise ValueError("Only finished scans can be deleted")
            deleted = await repo.delete(scan_id)
        if deleted:
            logger.info("Scan %s deleted by owner", scan_id)
        return deleted
