"""Analysis pipeline: cache check, clone, snapshot, prompt, model call, persist.

``AnalysisPipeline.run`` resolves one repository URL to an analysis.  When
the repository cache already holds an analysis of the remote's current
head commit, that analysis is returned and counted without cloning or
calling the model.  Otherwise the repository is shallow-cloned into a
temporary directory, summarised, analysed, and (unless the caller vetoes
persistence) written back to the cache.

The pipeline reports progress through a callback and knows nothing about
scans or cancellation; the scan runner owns both.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scan_engine.config import EngineSettings
from scan_engine.errors import CacheStateError
from scan_engine.git.urls import generate_repo_id
from scan_engine.llm.llm_client import AnalysisModel
from scan_engine.llm.prompts import build_analysis_prompt
from scan_engine.models.analysis import AnalysisResult, CachedRepositoryAnalysis, RepositoryMetadata
from scan_engine.snapshot.builder import RepositorySnapshot, build_snapshot
from scan_engine.state.database import session_scope
from scan_engine.state.repository import RepositoryCacheRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[object]]
PersistPredicate = Callable[[], Awaitable[bool]]


class SourceProvider(Protocol):
    """What the pipeline needs from the git source provider."""

    async def clone(self, url: str, dest: Path) -> Path: ...

    async def metadata(self, url: str, repo_path: Path) -> RepositoryMetadata: ...

    async def latest_commit_sha(self, url: str, branch: str | None = None) -> str | None: ...


# Progress checkpoints reported while a fresh analysis runs.
PROGRESS_CACHE_CHECK = 5
PROGRESS_CLONING = 10
PROGRESS_CLONED = 25
PROGRESS_METADATA = 30
PROGRESS_METADATA_DONE = 35
PROGRESS_COLLECTING = 40
PROGRESS_COLLECTED = 50
PROGRESS_MODEL_CALL = 55
PROGRESS_MODEL_DONE = 95
PROGRESS_COMPILING = 98


@dataclass(frozen=True)
class PipelineOutcome:
    """Result of one pipeline run."""

    analysis: CachedRepositoryAnalysis
    cache_hit: bool


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AnalysisPipeline:
    """Resolve repository URLs to analyses, reusing cached results when current.

    Parameters
    ----------
    session_factory:
        Session factory for the repository cache.
    source:
        Git source provider (clone, metadata, remote head lookup).
    model:
        Language model client producing :class:`AnalysisResult` objects.
    settings:
        Engine settings (temp directory prefix, snapshot limits).
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: SourceProvider,
        model: AnalysisModel,
        settings: EngineSettings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._source = source
        self._model = model
        self._settings = settings
        self._clock = clock

    async def run(
        self,
        repo_url: str,
        on_progress: ProgressCallback | None = None,
        *,
        should_persist: PersistPredicate | None = None,
    ) -> PipelineOutcome:
        """Analyse *repo_url*, short-circuiting on a current cache entry.

        Parameters
        ----------
        repo_url:
            Validated repository URL.
        on_progress:
            Awaited with a percentage at each checkpoint.
        should_persist:
            Awaited before any cache write; returning ``False`` skips the
            write (the result is still returned).

        Raises
        ------
        CloneError
            If the repository cannot be cloned.
        AnalysisError
            If the model call fails or its output cannot be parsed.
        """
        repo_id = generate_repo_id(repo_url)

        await self._report(on_progress, PROGRESS_CACHE_CHECK)
        cached = await self._resolve_from_cache(repo_id, repo_url, should_persist)
        if cached is not None:
            logger.info("Cache hit for %s (repo_id=%s, commit=%s)", repo_url, repo_id, cached.analyzed_commit)
            return PipelineOutcome(analysis=cached, cache_hit=True)

        logger.info("Cache miss for %s (repo_id=%s); running fresh analysis", repo_url, repo_id)
        return await self._analyze_fresh(repo_id, repo_url, on_progress, should_persist)

    # ------------------------------------------------------------------
    # Cache path
    # ------------------------------------------------------------------

    async def _resolve_from_cache(
        self,
        repo_id: str,
        repo_url: str,
        should_persist: PersistPredicate | None,
    ) -> CachedRepositoryAnalysis | None:
        """Return the cached analysis if it matches the remote head, counting the hit."""
        async with session_scope(self._session_factory) as session:
            try:
                cached = await RepositoryCacheRepository(session).get(repo_id)
            except CacheStateError:
                logger.warning("Discarding undecodable cache entry for repo_id=%s", repo_id, exc_info=True)
                cached = None

        if cached is None or cached.analyzed_commit is None:
            return None

        latest = await self._source.latest_commit_sha(repo_url, cached.metadata.branch)
        if latest is None or latest != cached.analyzed_commit:
            logger.debug(
                "Cache entry for repo_id=%s is stale or unverifiable (cached=%s latest=%s)",
                repo_id,
                cached.analyzed_commit,
                latest,
            )
            return None

        if should_persist is not None and not await should_persist():
            return cached

        now = self._clock()
        async with session_scope(self._session_factory) as session:
            counted = await RepositoryCacheRepository(session).record_hit(repo_id, now)
        if not counted:
            # Entry vanished between read and increment; analyse afresh.
            return None
        return cached.model_copy(
            update={"total_scans": cached.total_scans + 1, "last_scanned_at": now, "updated_at": now}
        )

    # ------------------------------------------------------------------
    # Fresh analysis
    # ------------------------------------------------------------------

    async def _analyze_fresh(
        self,
        repo_id: str,
        repo_url: str,
        on_progress: ProgressCallback | None,
        should_persist: PersistPredicate | None,
    ) -> PipelineOutcome:
        workdir = Path(tempfile.mkdtemp(prefix=self._settings.temp_dir_prefix))
        try:
            await self._report(on_progress, PROGRESS_CLONING)
            repo_path = await self._source.clone(repo_url, workdir / "repo")
            await self._report(on_progress, PROGRESS_CLONED)

            await self._report(on_progress, PROGRESS_METADATA)
            metadata = await self._source.metadata(repo_url, repo_path)
            await self._report(on_progress, PROGRESS_METADATA_DONE)

            await self._report(on_progress, PROGRESS_COLLECTING)
            snapshot = await asyncio.to_thread(
                build_snapshot,
                repo_path,
                max_file_bytes=self._settings.max_file_bytes,
                max_files=self._settings.max_snapshot_files,
            )
            await self._report(on_progress, PROGRESS_COLLECTED)

            prompt = build_analysis_prompt(metadata, snapshot)
            await self._report(on_progress, PROGRESS_MODEL_CALL)
            analysis = await self._model.analyze(prompt)
            await self._report(on_progress, PROGRESS_MODEL_DONE)
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, True)

        await self._report(on_progress, PROGRESS_COMPILING)
        analysis = _fill_file_stats(analysis, snapshot)
        now = self._clock()

        if should_persist is not None and not await should_persist():
            logger.info("Skipping cache write for repo_id=%s (persistence vetoed)", repo_id)
            return PipelineOutcome(
                analysis=self._unsaved_entry(repo_id, repo_url, analysis, metadata, now),
                cache_hit=False,
            )

        async with session_scope(self._session_factory) as session:
            repo = RepositoryCacheRepository(session)
            await repo.upsert(
                repo_id=repo_id,
                repo_url=repo_url,
                analysis=analysis,
                metadata=metadata,
                ai_model=self._model.model_name,
                now=now,
            )
            stored = await repo.get(repo_id)

        entry = stored or self._unsaved_entry(repo_id, repo_url, analysis, metadata, now)
        return PipelineOutcome(analysis=entry, cache_hit=False)

    def _unsaved_entry(
        self,
        repo_id: str,
        repo_url: str,
        analysis: AnalysisResult,
        metadata: RepositoryMetadata,
        now: datetime,
    ) -> CachedRepositoryAnalysis:
        return CachedRepositoryAnalysis(
            repo_id=repo_id,
            repo_url=repo_url,
            analysis=analysis,
            metadata=metadata,
            analyzed_commit=metadata.commit_sha,
            ai_model=self._model.model_name,
            total_scans=1,
            last_scanned_at=now,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    async def _report(on_progress: ProgressCallback | None, pct: int) -> None:
        if on_progress is not None:
            await on_progress(pct)


def _fill_file_stats(analysis: AnalysisResult, snapshot: RepositorySnapshot) -> AnalysisResult:
    """Use locally measured file statistics when the model omitted them."""
    if analysis.file_stats.total_files > 0:
        return analysis
    return analysis.model_copy(update={"file_stats": snapshot.file_stats})
