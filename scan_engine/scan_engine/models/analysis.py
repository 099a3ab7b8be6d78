"""Analysis payload, repository metadata, and cached analysis models.

The model returns camelCase JSON; every payload model accepts both the
camelCase aliases and the snake_case field names.  Serialisation uses the
snake_case names.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TechCategory = Literal["language", "framework", "library", "tool", "platform", "database", "other"]
SkillLevel = Literal["beginner", "junior", "mid-level", "senior"]


class _PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _round_score(value: Any) -> Any:
    if isinstance(value, float):
        return round(value)
    return value


# ---------------------------------------------------------------------------
# Analysis payload
# ---------------------------------------------------------------------------


class TechStackItem(_PayloadModel):
    """One technology detected in the repository."""

    name: str = Field(..., min_length=1)
    category: TechCategory = "other"
    version: str | None = None
    confidence: float | None = Field(default=None, ge=0, le=100)

    @field_validator("category", mode="before")
    @classmethod
    def _unknown_category_is_other(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in {
            "language",
            "framework",
            "library",
            "tool",
            "platform",
            "database",
        }:
            return value.lower()
        return "other"


class FileStats(_PayloadModel):
    total_files: int = Field(default=0, ge=0)
    total_lines: int = Field(default=0, ge=0)
    language_breakdown: dict[str, int] = Field(default_factory=dict)


class ProjectStructure(_PayloadModel):
    has_tests: bool = False
    has_ci: bool = Field(default=False, alias="hasCI")
    has_documentation: bool = False
    has_license: bool = False
    package_managers: list[str] = Field(default_factory=list)
    build_tools: list[str] = Field(default_factory=list)
    dockerized: bool = False
    monorepo: bool = False


class CodeQuality(_PayloadModel):
    score: int = Field(..., ge=0, le=100)
    issues: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def _whole_score(cls, value: Any) -> Any:
        return _round_score(value)


class Complexity(_PayloadModel):
    score: int = Field(..., ge=0, le=100)
    factors: list[str] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def _whole_score(cls, value: Any) -> Any:
        return _round_score(value)


class AnalysisResult(_PayloadModel):
    """Structured analysis produced by a single model call."""

    description: str = Field(..., min_length=1)
    primary_language: str = Field(..., min_length=1)
    tech_stack: list[TechStackItem] = Field(default_factory=list)
    file_stats: FileStats = Field(default_factory=FileStats)
    structure: ProjectStructure = Field(default_factory=ProjectStructure)
    code_quality: CodeQuality
    skill_level: SkillLevel
    skill_level_rationale: str = ""
    complexity: Complexity


# ---------------------------------------------------------------------------
# Repository metadata
# ---------------------------------------------------------------------------


class RepoProvider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    OTHER = "other"


class RepositoryMetadata(BaseModel):
    """Descriptive facts about a repository.

    ``stars``, ``forks`` and ``last_updated`` come from the hosting
    provider's API and are ``None`` whenever that lookup fails.
    """

    url: str
    owner: str
    name: str
    full_name: str
    provider: RepoProvider = RepoProvider.OTHER
    branch: str | None = None
    commit_sha: str | None = None
    stars: int | None = None
    forks: int | None = None
    last_updated: datetime | None = None


# ---------------------------------------------------------------------------
# Repository cache
# ---------------------------------------------------------------------------


class CachedRepositoryAnalysis(BaseModel):
    """Last successful analysis of a repository, keyed by ``repo_id``."""

    model_config = ConfigDict(from_attributes=True)

    repo_id: str = Field(..., min_length=16, max_length=16)
    repo_url: str
    analysis: AnalysisResult
    metadata: RepositoryMetadata
    analyzed_commit: str | None = Field(
        default=None,
        description="Commit SHA the analysis was produced from.",
    )
    ai_model: str
    total_scans: int = Field(..., ge=1)
    last_scanned_at: datetime
    created_at: datetime
    updated_at: datetime
