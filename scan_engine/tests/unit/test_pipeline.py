"""Tests for AnalysisPipeline with fake source and model collaborators."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from scan_engine.config import EngineSettings
from scan_engine.errors import AnalysisError, CloneError
from scan_engine.git.urls import generate_repo_id
from scan_engine.models.analysis import AnalysisResult, FileStats, RepositoryMetadata
from scan_engine.pipeline.analyzer import AnalysisPipeline
from scan_engine.state.database import session_scope
from scan_engine.state.repository import RepositoryCacheRepository

REPO_URL = "https://github.com/acme/widgets"


class FakeSource:
    """Git source double that writes a tiny working tree on clone."""

    def __init__(self, metadata: RepositoryMetadata, *, remote_head: str | None = None, fail_clone: bool = False):
        self._metadata = metadata
        self.remote_head = remote_head if remote_head is not None else metadata.commit_sha
        self.fail_clone = fail_clone
        self.clones: list[Path] = []

    async def clone(self, url: str, dest: Path) -> Path:
        self.clones.append(dest)
        if self.fail_clone:
            dest.mkdir(parents=True)
            raise CloneError("Repository not found or not accessible")
        (dest / "src").mkdir(parents=True)
        (dest / "README.md").write_text("# Widgets\n", encoding="utf-8")
        (dest / "src" / "app.py").write_text("print('hi')\nprint('bye')\n", encoding="utf-8")
        return dest

    async def metadata(self, url: str, repo_path: Path) -> RepositoryMetadata:
        return self._metadata

    async def latest_commit_sha(self, url: str, branch: str | None = None) -> str | None:
        return self.remote_head


class FakeModel:
    def __init__(self, result: AnalysisResult | None = None, error: Exception | None = None) -> None:
        self._result = result
        self._error = error
        self.prompts: list[str] = []

    @property
    def model_name(self) -> str:
        return "fake-model"

    async def analyze(self, user_prompt: str) -> AnalysisResult:
        self.prompts.append(user_prompt)
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result


@pytest.fixture()
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None, temp_dir_prefix="gitscope-test-")


def _pipeline(session_factory, source, model, settings, now: datetime) -> AnalysisPipeline:
    return AnalysisPipeline(session_factory, source, model, settings, clock=lambda: now)


@pytest.mark.asyncio
async def test_fresh_analysis_persists_and_reports_progress(
    session_factory, settings, sample_analysis, sample_metadata, now
) -> None:
    source = FakeSource(sample_metadata)
    model = FakeModel(sample_analysis)
    progress: list[int] = []

    async def on_progress(pct: int) -> None:
        progress.append(pct)

    outcome = await _pipeline(session_factory, source, model, settings, now).run(REPO_URL, on_progress)

    assert outcome.cache_hit is False
    assert outcome.analysis.total_scans == 1
    assert outcome.analysis.ai_model == "fake-model"
    assert outcome.analysis.analyzed_commit == sample_metadata.commit_sha
    assert progress == sorted(progress)
    assert progress[0] == 5
    assert progress[-1] == 98
    assert "acme/widgets" in model.prompts[0]
    assert not source.clones[0].parent.exists()


@pytest.mark.asyncio
async def test_second_scan_of_same_commit_uses_cache(
    session_factory, settings, sample_analysis, sample_metadata, now
) -> None:
    source = FakeSource(sample_metadata)
    model = FakeModel(sample_analysis)
    pipeline = _pipeline(session_factory, source, model, settings, now)

    await pipeline.run(REPO_URL)
    second = await pipeline.run(REPO_URL + ".git")

    assert second.cache_hit is True
    assert second.analysis.total_scans == 2
    assert len(source.clones) == 1
    assert len(model.prompts) == 1

    async with session_scope(session_factory) as session:
        stored = await RepositoryCacheRepository(session).get(generate_repo_id(REPO_URL))
    assert stored is not None
    assert stored.total_scans == 2


@pytest.mark.asyncio
async def test_new_remote_commit_triggers_fresh_analysis(
    session_factory, settings, sample_analysis, sample_metadata, now
) -> None:
    source = FakeSource(sample_metadata)
    model = FakeModel(sample_analysis)
    pipeline = _pipeline(session_factory, source, model, settings, now)
    await pipeline.run(REPO_URL)

    source.remote_head = "c" * 40
    outcome = await pipeline.run(REPO_URL)

    assert outcome.cache_hit is False
    assert outcome.analysis.total_scans == 2
    assert len(source.clones) == 2


@pytest.mark.asyncio
async def test_veto_skips_cache_write(session_factory, settings, sample_analysis, sample_metadata, now) -> None:
    pipeline = _pipeline(session_factory, FakeSource(sample_metadata), FakeModel(sample_analysis), settings, now)

    async def never() -> bool:
        return False

    outcome = await pipeline.run(REPO_URL, should_persist=never)

    assert outcome.analysis.total_scans == 1
    async with session_scope(session_factory) as session:
        assert await RepositoryCacheRepository(session).get(generate_repo_id(REPO_URL)) is None


@pytest.mark.asyncio
async def test_veto_on_cache_hit_does_not_count(
    session_factory, settings, sample_analysis, sample_metadata, now
) -> None:
    pipeline = _pipeline(session_factory, FakeSource(sample_metadata), FakeModel(sample_analysis), settings, now)
    await pipeline.run(REPO_URL)

    async def never() -> bool:
        return False

    outcome = await pipeline.run(REPO_URL, should_persist=never)

    assert outcome.cache_hit is True
    async with session_scope(session_factory) as session:
        stored = await RepositoryCacheRepository(session).get(generate_repo_id(REPO_URL))
    assert stored is not None
    assert stored.total_scans == 1


@pytest.mark.asyncio
async def test_clone_failure_cleans_workdir(session_factory, settings, sample_analysis, sample_metadata, now) -> None:
    source = FakeSource(sample_metadata, fail_clone=True)
    model = FakeModel(sample_analysis)

    with pytest.raises(CloneError):
        await _pipeline(session_factory, source, model, settings, now).run(REPO_URL)

    assert not source.clones[0].parent.exists()
    assert model.prompts == []


@pytest.mark.asyncio
async def test_model_failure_propagates(session_factory, settings, sample_metadata, now) -> None:
    model = FakeModel(error=AnalysisError("Analysis model returned malformed JSON"))
    with pytest.raises(AnalysisError, match="malformed JSON"):
        await _pipeline(session_factory, FakeSource(sample_metadata), model, settings, now).run(REPO_URL)


@pytest.mark.asyncio
async def test_missing_file_stats_filled_from_snapshot(
    session_factory, settings, sample_analysis, sample_metadata, now
) -> None:
    bare = sample_analysis.model_copy(update={"file_stats": FileStats()})
    pipeline = _pipeline(session_factory, FakeSource(sample_metadata), FakeModel(bare), settings, now)

    outcome = await pipeline.run(REPO_URL)

    stats = outcome.analysis.analysis.file_stats
    assert stats.total_files == 2
    assert stats.language_breakdown["Python"] == 3


@pytest.mark.asyncio
async def test_cache_hit_stamps_clock(session_factory, settings, sample_analysis, sample_metadata, now) -> None:
    source = FakeSource(sample_metadata)
    model = FakeModel(sample_analysis)
    await _pipeline(session_factory, source, model, settings, now).run(REPO_URL)

    later = now + timedelta(hours=1)
    outcome = await _pipeline(session_factory, source, model, settings, later).run(REPO_URL)

    assert outcome.analysis.last_scanned_at == later
