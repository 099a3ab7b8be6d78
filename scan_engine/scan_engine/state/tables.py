"""SQLAlchemy 2.0 ORM table definitions for the gitscope state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all()`` and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC
    so comparisons against ``datetime.now(UTC)`` never mix naive and aware
    datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all gitscope tables."""


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------


class ScanTable(Base):
    """One row per submitted scan."""

    __tablename__ = "scans"

    scan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    principal_id: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    repo_id: Mapped[str] = mapped_column(String(16), nullable=False)
    repo_url: Mapped[str] = mapped_column(String(512), nullable=False)
    repo_full_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    queued_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="ck_scans_status",
        ),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_scans_progress"),
        Index("ix_scans_principal_created", "principal_id", "created_at"),
        Index("ix_scans_repo", "repo_id"),
    )


# ---------------------------------------------------------------------------
# Quota ledgers
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Authenticated users and their quota ledger."""

    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    quota_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)


class AnonymousUserTable(Base):
    """Anonymous callers keyed by salted IP hash.

    ``expires_at`` is the retention stamp consumed by the sweeper; the
    ledger never deletes rows itself.
    """

    __tablename__ = "anonymous_users"

    hashed_ip: Mapped[str] = mapped_column(String(128), primary_key=True)
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    quota_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (Index("ix_anonymous_users_expires", "expires_at"),)


# ---------------------------------------------------------------------------
# Repository cache
# ---------------------------------------------------------------------------


class RepositoryCacheTable(Base):
    """Last successful analysis per repository."""

    __tablename__ = "repository_cache"

    repo_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    repo_url: Mapped[str] = mapped_column(String(512), nullable=False)
    full_name: Mapped[str] = mapped_column(String(256), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    branch: Mapped[str | None] = mapped_column(String(256), nullable=True)
    analyzed_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    analysis_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    ai_model: Mapped[str] = mapped_column(String(128), nullable=False)
    total_scans: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_scanned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_utcnow)

    __table_args__ = (CheckConstraint("total_scans >= 1", name="ck_repository_cache_total_scans"),)
