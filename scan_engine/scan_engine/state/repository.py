"""Repository classes providing access to the gitscope state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary; the caller commits (usually via
:func:`scan_engine.state.database.session_scope`).

Every mutation that other writers may race against is a single
conditional ``UPDATE`` or ``INSERT ... ON CONFLICT`` statement.  Methods
report whether their guard matched (``rowcount``) instead of reading,
deciding in Python, and writing back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scan_engine.errors import CacheStateError, LedgerStateError, ScanStateError
from scan_engine.models.analysis import (
    AnalysisResult,
    CachedRepositoryAnalysis,
    RepositoryMetadata,
)
from scan_engine.models.quota import UNLIMITED, PrincipalKind, QuotaState
from scan_engine.models.scan import ScanRecord, ScanStatus
from scan_engine.state.tables import (
    AnonymousUserTable,
    RepositoryCacheTable,
    ScanTable,
    UserTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


def _insert(session: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific ``INSERT`` construct supporting ``ON CONFLICT``."""
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
    set_overrides: dict[str, Any] | None = None,
) -> Any:
    """Dialect-aware upsert: ``INSERT ... ON CONFLICT DO UPDATE``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names overwritten with the incoming values on conflict.
    set_overrides:
        Extra ``SET`` expressions applied on conflict, evaluated against the
        existing row (e.g. ``counter + 1``).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt = _insert(session, table).values(**values)
    set_: dict[str, Any] = {col: stmt.excluded[col] for col in update_columns}
    if set_overrides:
        set_.update(set_overrides)
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Returns
    -------
    bool
        ``True`` if the row was inserted, ``False`` if a row with the same
        key already existed.
    """
    stmt = _insert(session, table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return bool(result.rowcount == 1)


# ---------------------------------------------------------------------------
# QuotaLedgerRepository
# ---------------------------------------------------------------------------


class QuotaLedgerRepository:
    """Per-principal quota counters.

    Authenticated principals live in ``users`` and anonymous principals in
    ``anonymous_users``.  Every write to an anonymous row pushes its
    ``expires_at`` retention stamp forward by *retention*.
    """

    def __init__(
        self,
        session: AsyncSession,
        kind: PrincipalKind,
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        self._session = session
        self._kind = kind
        self._retention = retention
        self._table: Any
        if kind == PrincipalKind.AUTHENTICATED:
            self._table = UserTable
            self._key_name = "user_id"
        else:
            self._table = AnonymousUserTable
            self._key_name = "hashed_ip"
        self._key = getattr(self._table, self._key_name)

    def _touch(self, now: datetime) -> dict[str, Any]:
        values: dict[str, Any] = {"updated_at": now}
        if self._kind == PrincipalKind.ANONYMOUS:
            values["expires_at"] = now + self._retention
        return values

    async def _guarded_update(self, principal_id: str, *conditions: Any, values: dict[str, Any]) -> bool:
        stmt = (
            update(self._table)
            .where(self._key == principal_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount == 1)

    async def get(self, principal_id: str) -> QuotaState | None:
        """Return the principal's quota, or ``None`` if no row exists.

        Raises
        ------
        LedgerStateError
            If the stored row violates the quota invariants.
        """
        t = self._table
        stmt = select(t.quota_used, t.quota_limit, t.quota_reset_at).where(self._key == principal_id)
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        try:
            return QuotaState(used=row.quota_used, limit=row.quota_limit, reset_at=row.quota_reset_at)
        except ValidationError as exc:
            logger.error(
                "Malformed quota row: kind=%s principal=%s used=%r limit=%r reset_at=%r",
                self._kind.value,
                principal_id,
                row.quota_used,
                row.quota_limit,
                row.quota_reset_at,
            )
            raise LedgerStateError("Invalid quota data") from exc

    async def create(
        self,
        principal_id: str,
        *,
        limit: int,
        reset_at: datetime | None,
        now: datetime,
    ) -> bool:
        """Insert a ledger row that already counts the current request.

        Returns ``False`` if another writer created the row first.
        """
        values: dict[str, Any] = {
            self._key_name: principal_id,
            "quota_used": 1,
            "quota_limit": limit,
            "quota_reset_at": reset_at,
            "created_at": now,
            **self._touch(now),
        }
        return await _dialect_insert_nothing(self._session, self._table, values, [self._key_name])

    async def increment_unlimited(self, principal_id: str, now: datetime) -> bool:
        """Atomically bump ``used`` on an unlimited row."""
        t = self._table
        return await self._guarded_update(
            principal_id,
            t.quota_limit == UNLIMITED,
            values={"quota_used": t.quota_used + 1, **self._touch(now)},
        )

    async def increment_within_limit(self, principal_id: str, now: datetime) -> bool:
        """Atomically bump ``used`` while it is below the limit in the current window."""
        t = self._table
        return await self._guarded_update(
            principal_id,
            t.quota_limit != UNLIMITED,
            t.quota_used < t.quota_limit,
            t.quota_reset_at > now,
            values={"quota_used": t.quota_used + 1, **self._touch(now)},
        )

    async def reset_window(self, principal_id: str, now: datetime, next_reset_at: datetime) -> bool:
        """Compare-and-set reset: start a new window counting the current request.

        Matches only while the stored boundary is still due, so exactly one of
        several concurrent resetters wins.
        """
        t = self._table
        return await self._guarded_update(
            principal_id,
            t.quota_limit != UNLIMITED,
            t.quota_reset_at <= now,
            values={"quota_used": 1, "quota_reset_at": next_reset_at, **self._touch(now)},
        )

    async def purge_expired(self, now: datetime) -> int:
        """Delete anonymous rows whose retention stamp has passed."""
        if self._kind != PrincipalKind.ANONYMOUS:
            raise ValueError("Only anonymous ledger rows expire")
        stmt = delete(AnonymousUserTable).where(AnonymousUserTable.expires_at <= now)
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        return int(result.rowcount or 0)


# ---------------------------------------------------------------------------
# ScanRepository
# ---------------------------------------------------------------------------

_MAX_SCAN_PAGE_SIZE = 100


def _scan_from_row(row: ScanTable) -> ScanRecord:
    try:
        return ScanRecord.model_validate(row)
    except ValidationError as exc:
        logger.error("Malformed scan row: scan_id=%s status=%s", row.scan_id, row.status)
        raise ScanStateError(f"Scan {row.scan_id} violates lifecycle invariants") from exc


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class ScanRepository:
    """CRUD and conditional transitions for scan documents."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, record: ScanRecord) -> None:
        """Insert a new scan row."""
        values = {key: _column_value(val) for key, val in record.model_dump().items()}
        self._session.add(ScanTable(**values))
        await self._session.flush()

    async def get(self, scan_id: str) -> ScanRecord | None:
        stmt = select(ScanTable).where(ScanTable.scan_id == scan_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        return _scan_from_row(row) if row is not None else None

    async def list_for_principal(
        self,
        principal_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ScanRecord]:
        """Return the principal's scans, newest first."""
        limit = max(1, min(limit, _MAX_SCAN_PAGE_SIZE))
        stmt = (
            select(ScanTable)
            .where(ScanTable.principal_id == principal_id)
            .order_by(ScanTable.created_at.desc(), ScanTable.scan_id.desc())
            .limit(limit)
            .offset(max(offset, 0))
        )
        result = await self._session.execute(stmt)
        return [_scan_from_row(row) for row in result.scalars().all()]

    async def transition(
        self,
        scan_id: str,
        *,
        from_statuses: tuple[ScanStatus, ...],
        values: dict[str, Any],
        max_progress: int | None = None,
    ) -> bool:
        """Apply *values* only while the scan is in one of *from_statuses*.

        Parameters
        ----------
        scan_id:
            Target scan.
        from_statuses:
            Statuses the row must currently hold for the update to apply.
        values:
            Column-value mapping to write.
        max_progress:
            When given, the update also requires ``progress <= max_progress``
            so that progress never moves backwards.

        Returns
        -------
        bool
            ``True`` if the guard matched and the row was updated.
        """
        conditions = [
            ScanTable.scan_id == scan_id,
            ScanTable.status.in_([status.value for status in from_statuses]),
        ]
        if max_progress is not None:
            conditions.append(ScanTable.progress <= max_progress)
        stmt = (
            update(ScanTable)
            .where(*conditions)
            .values(**{key: _column_value(val) for key, val in values.items()})
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount == 1)

    async def delete(self, scan_id: str) -> bool:
        stmt = delete(ScanTable).where(ScanTable.scan_id == scan_id)
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        return bool(result.rowcount == 1)


# ---------------------------------------------------------------------------
# RepositoryCacheRepository
# ---------------------------------------------------------------------------

_CACHE_OVERWRITE_COLUMNS = [
    "repo_url",
    "full_name",
    "provider",
    "branch",
    "analyzed_commit",
    "analysis_json",
    "metadata_json",
    "ai_model",
    "last_scanned_at",
    "updated_at",
]


class RepositoryCacheRepository:
    """Last successful analysis per ``repo_id`` plus its scan counter."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, repo_id: str) -> CachedRepositoryAnalysis | None:
        """Return the cached analysis for *repo_id*.

        Raises
        ------
        CacheStateError
            If the stored payload no longer validates.
        """
        stmt = select(RepositoryCacheTable).where(RepositoryCacheTable.repo_id == repo_id)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        try:
            return CachedRepositoryAnalysis(
                repo_id=row.repo_id,
                repo_url=row.repo_url,
                analysis=AnalysisResult.model_validate(row.analysis_json),
                metadata=RepositoryMetadata.model_validate(row.metadata_json),
                analyzed_commit=row.analyzed_commit,
                ai_model=row.ai_model,
                total_scans=row.total_scans,
                last_scanned_at=row.last_scanned_at,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
        except ValidationError as exc:
            raise CacheStateError(f"Cached analysis for {repo_id} is malformed") from exc

    async def record_hit(self, repo_id: str, now: datetime) -> bool:
        """Atomically count one more scan resolved from the cache."""
        stmt = (
            update(RepositoryCacheTable)
            .where(RepositoryCacheTable.repo_id == repo_id)
            .values(
                total_scans=RepositoryCacheTable.total_scans + 1,
                last_scanned_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount == 1)

    async def upsert(
        self,
        *,
        repo_id: str,
        repo_url: str,
        analysis: AnalysisResult,
        metadata: RepositoryMetadata,
        ai_model: str,
        now: datetime,
    ) -> None:
        """Store a fresh analysis, overwriting any previous payload.

        ``total_scans`` starts at 1 and otherwise grows by exactly one in
        the same statement, so concurrent fresh analyses never lose counts.
        """
        values = {
            "repo_id": repo_id,
            "repo_url": repo_url,
            "full_name": metadata.full_name,
            "provider": metadata.provider.value,
            "branch": metadata.branch,
            "analyzed_commit": metadata.commit_sha,
            "analysis_json": analysis.model_dump(mode="json"),
            "metadata_json": metadata.model_dump(mode="json"),
            "ai_model": ai_model,
            "total_scans": 1,
            "last_scanned_at": now,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            RepositoryCacheTable,
            values=values,
            index_elements=["repo_id"],
            update_columns=_CACHE_OVERWRITE_COLUMNS,
            set_overrides={"total_scans": RepositoryCacheTable.__table__.c.total_scans + 1},
        )
        await self._session.flush()
