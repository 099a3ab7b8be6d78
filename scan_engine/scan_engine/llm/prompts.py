"""Versioned prompt template registry and analysis prompt builder.

Every prompt used by the LLM client is registered here as a frozen
dataclass with a version string.  The version is logged alongside every
LLM call so that prompt changes are traceable in the logs without
requiring a database-backed registry.

When prompts are updated, bump the ``version`` field so that log
correlation is unambiguous.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from scan_engine.models.analysis import RepositoryMetadata
from scan_engine.snapshot.builder import RepositorySnapshot, SnapshotFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptTemplate:
    """An immutable, versioned prompt template."""

    key: str
    version: str
    content: str
    description: str


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROMPT_REGISTRY: dict[str, PromptTemplate] = {}


def _register(template: PromptTemplate) -> PromptTemplate:
    """Register a template and return it for module-level assignment."""
    PROMPT_REGISTRY[template.key] = template
    return template


def get_prompt(key: str) -> PromptTemplate:
    """Retrieve a registered prompt template by key.

    Raises
    ------
    KeyError
        If no template is registered under *key*.
    """
    try:
        return PROMPT_REGISTRY[key]
    except KeyError:
        raise KeyError(f"Unknown prompt key '{key}'. Registered keys: {sorted(PROMPT_REGISTRY)}")


# ---------------------------------------------------------------------------
# Registered templates
# ---------------------------------------------------------------------------

ANALYZE_REPOSITORY_SYSTEM = _register(
    PromptTemplate(
        key="analyze_repository_system",
        version="v1",
        content=(
            "You are an expert software architect and code analyst.  You receive an "
            "excerpt of a Git repository (metadata, README, file listing, configuration, "
            "source samples, tests and CI configuration) and assess it the way a senior "
            "engineer would: from the code that is actually there, not from file names "
            "alone.  Detect technologies that are really used, judge code quality with "
            "concrete evidence, and be realistic about the skill level the project "
            "requires.\n\n"
            "Respond ONLY with one JSON object, no markdown and no prose, matching:\n"
            "{\n"
            '  "description": "<2-3 specific sentences>",\n'
            '  "primaryLanguage": "<main language by actual code>",\n'
            '  "techStack": [{"name": "<tech>", '
            '"category": "language|framework|library|tool|platform|database|other", '
            '"version": "<version or null>", "confidence": <0-100>}],\n'
            '  "fileStats": {"totalFiles": <int>, "totalLines": <int>, '
            '"languageBreakdown": {"<language>": <lines>}},\n'
            '  "structure": {"hasTests": <bool>, "hasCI": <bool>, "hasDocumentation": <bool>, '
            '"hasLicense": <bool>, "packageManagers": ["<pm>"], "buildTools": ["<tool>"], '
            '"dockerized": <bool>, "monorepo": <bool>},\n'
            '  "codeQuality": {"score": <0-100>, "issues": ["<issue>"], "strengths": ["<strength>"]},\n'
            '  "skillLevel": "beginner|junior|mid-level|senior",\n'
            '  "skillLevelRationale": "<why>",\n'
            '  "complexity": {"score": <0-100>, "factors": ["<factor>"]}\n'
            "}"
        ),
        description="System prompt for the single-pass repository analysis call.",
    )
)


# ---------------------------------------------------------------------------
# Input sanitisation
# ---------------------------------------------------------------------------

_PROMPT_INJECTION_PATTERNS = re.compile(
    r"<\|system\|>|<\|user\|>|<\|assistant\|>|"
    r"\n\nHuman:|\n\nAssistant:|"
    r"\[INST\]|\[/INST\]|"
    r"<<SYS>>|<</SYS>>|"
    r"<\|im_start\|>|<\|im_end\|>",
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")  # Keep \n, \t, \r
_MAX_FIELD_SIZE = 50 * 1024


def sanitize_prompt_input(value: str, field_name: str = "input", max_size: int = _MAX_FIELD_SIZE) -> str:
    """Sanitize repository-derived text before it is placed in a prompt.

    Strips control characters (preserving newlines and tabs), neutralises
    known role/delimiter markers, and truncates oversized inputs.

    Parameters
    ----------
    value:
        Raw repository-derived string.
    field_name:
        Human-readable field name used in truncation messages.
    max_size:
        Maximum number of characters kept.
    """
    cleaned = _CONTROL_CHARS.sub("", value)
    cleaned = _PROMPT_INJECTION_PATTERNS.sub("[FILTERED]", cleaned)
    if len(cleaned) > max_size:
        cleaned = cleaned[:max_size] + f"\n[TRUNCATED: {field_name} exceeded {max_size} characters]"
    return cleaned


# ---------------------------------------------------------------------------
# Analysis prompt
# ---------------------------------------------------------------------------

_FILE_LIST_LIMIT = 100
_README_CHARS = 4000


def _fence(item: SnapshotFile, max_chars: int) -> str:
    body = sanitize_prompt_input(item.content[:max_chars], item.path, max_chars)
    return f"### {item.path}\n```\n{body}\n```"


def build_analysis_prompt(metadata: RepositoryMetadata, snapshot: RepositorySnapshot) -> str:
    """Render the user message for the repository analysis call."""
    stats = snapshot.file_stats
    lines: list[str] = [
        "## Repository Information",
        f"- Repository: {sanitize_prompt_input(metadata.full_name, 'full_name', 256)}",
        f"- URL: {metadata.url}",
        f"- Provider: {metadata.provider.value}",
        f"- Branch: {metadata.branch or 'unknown'}",
        f"- Total Files: {stats.total_files}",
        f"- Total Lines: {stats.total_lines}",
    ]
    if metadata.stars is not None:
        lines.append(f"- Stars: {metadata.stars}")
    if metadata.forks is not None:
        lines.append(f"- Forks: {metadata.forks}")
    if stats.language_breakdown:
        breakdown = ", ".join(
            f"{lang}: {count}" for lang, count in sorted(stats.language_breakdown.items(), key=lambda kv: -kv[1])
        )
        lines.append(f"- Lines by language: {breakdown}")
    if snapshot.truncated:
        lines.append("- Note: the file listing was truncated")

    sections: list[str] = ["\n".join(lines)]

    if snapshot.readme:
        readme = sanitize_prompt_input(snapshot.readme[:_README_CHARS], "README", _README_CHARS)
        sections.append(f"## README\n```markdown\n{readme}\n```")

    listing = "\n".join(
        f"- {sanitize_prompt_input(item.path, 'path', 512)} ({item.lines} lines, {item.size} bytes)"
        for item in snapshot.files[:_FILE_LIST_LIMIT]
    )
    sections.append(f"## File Structure Overview\n{listing}")

    configs = snapshot.config_files()
    if configs:
        sections.append("## Configuration Files\n" + "\n\n".join(_fence(item, 2000) for item in configs))

    samples = snapshot.source_samples()
    sections.append(
        f"## Source Code Samples (Top {len(samples)} Files)\n" + "\n\n".join(_fence(item, 1200) for item in samples)
    )

    tests = snapshot.test_files()
    if tests:
        sections.append("## Test Files\n" + "\n\n".join(_fence(item, 800) for item in tests))

    ci = snapshot.ci_files()
    if ci:
        sections.append("## CI/CD Configuration\n" + "\n\n".join(_fence(item, 600) for item in ci))

    sections.append("Analyze this repository and return the JSON object described in your instructions.")
    return "\n\n".join(sections)
