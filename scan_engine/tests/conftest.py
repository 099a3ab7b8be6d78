"""Shared fixtures for scan engine tests.

Repository and pipeline tests run against an in-memory SQLite database
via aiosqlite so they need no PostgreSQL instance.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio
from scan_engine.models.analysis import (
    AnalysisResult,
    CodeQuality,
    Complexity,
    FileStats,
    RepoProvider,
    RepositoryMetadata,
    TechStackItem,
)
from scan_engine.state.database import create_tables, get_local_engine, get_session_factory
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

REPO_URL = "https://github.com/acme/widgets"


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh in-memory database with all tables created."""
    engine = get_local_engine(":memory:")
    await create_tables(engine)
    yield get_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a SQLite file, for tests with concurrent readers and writers."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_tables(engine)
    yield get_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def sample_analysis() -> AnalysisResult:
    return AnalysisResult(
        description="A small widget toolkit.",
        primary_language="Python",
        tech_stack=[TechStackItem(name="FastAPI", category="framework", version="0.115", confidence=90)],
        file_stats=FileStats(total_files=12, total_lines=840, language_breakdown={"Python": 10, "Markdown": 2}),
        code_quality=CodeQuality(score=78, issues=["Few tests"], strengths=["Typed"]),
        skill_level="mid-level",
        skill_level_rationale="Idiomatic async code.",
        complexity=Complexity(score=40, factors=["Async IO"]),
    )


@pytest.fixture()
def sample_metadata() -> RepositoryMetadata:
    return RepositoryMetadata(
        url=REPO_URL,
        owner="acme",
        name="widgets",
        full_name="acme/widgets",
        provider=RepoProvider.GITHUB,
        branch="main",
        commit_sha="a" * 40,
        stars=42,
        forks=7,
    )
