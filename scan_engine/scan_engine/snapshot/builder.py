"""Build an in-memory snapshot of a cloned repository for prompting.

The walker skips dependency folders, build output, caches, editor state,
and minified or bundled artefacts so that the prompt budget is spent on
code a human wrote.  File contents live only in memory for the duration
of one analysis; nothing here is persisted.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from scan_engine.models.analysis import FileStats

logger = logging.getLogger(__name__)

# Directory names pruned anywhere in the tree.
IGNORED_DIRS: frozenset[str] = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        ".next",
        ".nuxt",
        ".output",
        ".cache",
        "coverage",
        ".vscode",
        ".idea",
        "vendor",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".venv",
        "target",
        "out",
    }
)

# File name patterns skipped anywhere in the tree.
IGNORED_FILE_PATTERNS: tuple[str, ...] = (
    ".DS_Store",
    "*.min.js",
    "*.min.css",
    "*.bundle.js",
    "*.map",
    "*.pyc",
)

README_NAMES: tuple[str, ...] = ("readme.md", "readme.rst", "readme.txt", "readme")

EXTENSION_LANGUAGES: dict[str, str] = {
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".py": "Python",
    ".java": "Java",
    ".cpp": "C++",
    ".cc": "C++",
    ".hpp": "C++",
    ".c": "C",
    ".h": "C",
    ".cs": "C#",
    ".go": "Go",
    ".rs": "Rust",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".scala": "Scala",
    ".html": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".vue": "Vue",
    ".svelte": "Svelte",
    ".md": "Markdown",
    ".json": "JSON",
    ".yaml": "YAML",
    ".yml": "YAML",
    ".toml": "TOML",
    ".sh": "Shell",
    ".sql": "SQL",
}

_SOURCE_EXTENSIONS: frozenset[str] = frozenset(
    {".ts", ".tsx", ".js", ".jsx", ".py", ".java", ".go", ".rs", ".rb", ".kt", ".cs", ".cpp", ".c", ".php", ".swift"}
)
_SOURCE_DIR_HINTS: tuple[str, ...] = ("src/", "lib/", "app/")

_CONFIG_NAMES: frozenset[str] = frozenset(
    {
        "package.json",
        "tsconfig.json",
        "pyproject.toml",
        "setup.cfg",
        "setup.py",
        "requirements.txt",
        "cargo.toml",
        "go.mod",
        "pom.xml",
        "build.gradle",
        "build.gradle.kts",
        "composer.json",
        "gemfile",
        "dockerfile",
        "docker-compose.yml",
        "docker-compose.yaml",
        "makefile",
    }
)

_TEST_HINTS: tuple[str, ...] = ("test", "spec", "__tests__")
_CI_HINTS: tuple[str, ...] = (".github/workflows", ".gitlab-ci", ".travis", "jenkinsfile", ".circleci")


@dataclass(frozen=True)
class SnapshotFile:
    """One decoded text file from the repository."""

    path: str
    content: str
    size: int
    lines: int


@dataclass
class RepositorySnapshot:
    """Everything the prompt builder needs from a cloned repository."""

    files: list[SnapshotFile] = field(default_factory=list)
    readme: str | None = None
    skipped_files: int = 0
    truncated: bool = False

    @property
    def file_stats(self) -> FileStats:
        breakdown: dict[str, int] = {}
        for item in self.files:
            language = EXTENSION_LANGUAGES.get(PurePosixPath(item.path).suffix.lower(), "Other")
            breakdown[language] = breakdown.get(language, 0) + item.lines
        return FileStats(
            total_files=len(self.files),
            total_lines=sum(item.lines for item in self.files),
            language_breakdown=breakdown,
        )

    def source_samples(self, limit: int = 25) -> list[SnapshotFile]:
        out: list[SnapshotFile] = []
        for item in self.files:
            lowered = item.path.lower()
            if ".min." in lowered:
                continue
            if PurePosixPath(lowered).suffix in _SOURCE_EXTENSIONS or any(
                hint in lowered for hint in _SOURCE_DIR_HINTS
            ):
                out.append(item)
            if len(out) >= limit:
                break
        return out

    def config_files(self, limit: int = 10) -> list[SnapshotFile]:
        out = [
            item
            for item in self.files
            if item.path.lower() in _CONFIG_NAMES
            or ("config" in PurePosixPath(item.path).name.lower() and item.path.lower().endswith(".json"))
        ]
        return out[:limit]

    def test_files(self, limit: int = 5) -> list[SnapshotFile]:
        out = [item for item in self.files if any(hint in item.path.lower() for hint in _TEST_HINTS)]
        return out[:limit]

    def ci_files(self) -> list[SnapshotFile]:
        return [item for item in self.files if any(hint in item.path.lower() for hint in _CI_HINTS)]


def is_ignored(relative_path: str, is_dir: bool = False) -> bool:
    """Return ``True`` if *relative_path* (POSIX separators) should be skipped."""
    parts = PurePosixPath(relative_path).parts
    if not parts:
        return False
    dir_parts = parts if is_dir else parts[:-1]
    if any(part in IGNORED_DIRS for part in dir_parts):
        return True
    if "public/build" in relative_path:
        return True
    if not is_dir:
        name = parts[-1]
        return any(fnmatch.fnmatch(name, pattern) for pattern in IGNORED_FILE_PATTERNS)
    return False


def _read_text(path: Path, max_bytes: int) -> str | None:
    """Return the UTF-8 content of *path*, or ``None`` if binary or too large."""
    try:
        size = path.stat().st_size
        if size > max_bytes:
            return None
        raw = path.read_bytes()
    except OSError as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return None
    if b"\x00" in raw[:8192]:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def build_snapshot(
    root: Path,
    *,
    max_file_bytes: int = 1_000_000,
    max_files: int = 10_000,
) -> RepositorySnapshot:
    """Walk *root* and collect decoded text files in a stable order.

    Parameters
    ----------
    root:
        Root of the cloned working tree.
    max_file_bytes:
        Files larger than this are skipped.
    max_files:
        Collection stops after this many files and ``truncated`` is set.
    """
    snapshot = RepositorySnapshot()
    readme_rank: int | None = None

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        rel_dir = current.relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        # Prune ignored directories in place so os.walk never descends.
        dirnames[:] = sorted(
            d for d in dirnames if not is_ignored(f"{rel_dir}/{d}" if rel_dir else d, is_dir=True)
        )

        for filename in sorted(filenames):
            rel_path = f"{rel_dir}/{filename}" if rel_dir else filename
            if is_ignored(rel_path):
                continue
            full = current / filename
            if full.is_symlink() or not full.is_file():
                continue
            content = _read_text(full, max_file_bytes)
            if content is None:
                snapshot.skipped_files += 1
                continue
            if len(snapshot.files) >= max_files:
                snapshot.truncated = True
                logger.info("Snapshot of %s truncated at %d files", root, max_files)
                return snapshot

            snapshot.files.append(
                SnapshotFile(
                    path=rel_path,
                    content=content,
                    size=len(content.encode("utf-8")),
                    lines=content.count("\n") + 1 if content else 0,
                )
            )

            if not rel_dir and filename.lower() in README_NAMES:
                rank = README_NAMES.index(filename.lower())
                if readme_rank is None or rank < readme_rank:
                    readme_rank = rank
                    snapshot.readme = content

    logger.debug(
        "Snapshot built: files=%d skipped=%d readme=%s",
        len(snapshot.files),
        snapshot.skipped_files,
        snapshot.readme is not None,
    )
    return snapshot
