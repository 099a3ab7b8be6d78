"""Unit tests for the repository snapshot builder."""

from __future__ import annotations

from pathlib import Path

import pytest
from scan_engine.snapshot.builder import build_snapshot, is_ignored


def _write(root: Path, rel: str, content: str | bytes) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")


@pytest.fixture()
def repo_tree(tmp_path: Path) -> Path:
    _write(tmp_path, "README.md", "# Widgets\nA toolkit.\n")
    _write(tmp_path, "readme.txt", "secondary readme")
    _write(tmp_path, "pyproject.toml", "[project]\nname = 'widgets'\n")
    _write(tmp_path, "src/widgets/core.py", "def spin():\n    return 1\n")
    _write(tmp_path, "tests/test_core.py", "def test_spin():\n    assert True\n")
    _write(tmp_path, ".github/workflows/ci.yml", "on: push\n")
    _write(tmp_path, "node_modules/left-pad/index.js", "module.exports = 1;\n")
    _write(tmp_path, "dist/bundle.js", "var a=1;\n")
    _write(tmp_path, "static/app.min.js", "var b=2;\n")
    _write(tmp_path, "logo.png", b"\x89PNG\x00\x00binary")
    return tmp_path


class TestIsIgnored:
    @pytest.mark.parametrize(
        "path",
        [
            "node_modules/x/index.js",
            "pkg/__pycache__/mod.pyc",
            "a/b/.git/config",
            "web/app.min.js",
            "web/app.js.map",
            "target/release/bin",
        ],
    )
    def test_ignored_paths(self, path: str) -> None:
        assert is_ignored(path)

    def test_ignored_directory(self) -> None:
        assert is_ignored("coverage", is_dir=True)

    def test_regular_source_kept(self) -> None:
        assert not is_ignored("src/app/main.py")


class TestBuildSnapshot:
    def test_collects_text_files_and_skips_ignored(self, repo_tree: Path) -> None:
        snapshot = build_snapshot(repo_tree)
        paths = {f.path for f in snapshot.files}

        assert "src/widgets/core.py" in paths
        assert ".github/workflows/ci.yml" in paths
        assert not any(p.startswith("node_modules/") for p in paths)
        assert not any(p.startswith("dist/") for p in paths)
        assert "static/app.min.js" not in paths
        assert "logo.png" not in paths
        assert snapshot.skipped_files == 1

    def test_readme_prefers_markdown(self, repo_tree: Path) -> None:
        snapshot = build_snapshot(repo_tree)
        assert snapshot.readme is not None
        assert snapshot.readme.startswith("# Widgets")

    def test_oversized_file_skipped(self, tmp_path: Path) -> None:
        _write(tmp_path, "big.txt", "x" * 2048)
        _write(tmp_path, "small.txt", "ok")
        snapshot = build_snapshot(tmp_path, max_file_bytes=1024)
        assert [f.path for f in snapshot.files] == ["small.txt"]
        assert snapshot.skipped_files == 1

    def test_truncation(self, tmp_path: Path) -> None:
        for i in range(5):
            _write(tmp_path, f"f{i}.py", "pass\n")
        snapshot = build_snapshot(tmp_path, max_files=3)
        assert len(snapshot.files) == 3
        assert snapshot.truncated is True

    def test_file_stats_and_categories(self, repo_tree: Path) -> None:
        snapshot = build_snapshot(repo_tree)
        stats = snapshot.file_stats

        assert stats.total_files == len(snapshot.files)
        assert stats.language_breakdown["Python"] > 0
        assert [f.path for f in snapshot.config_files()] == ["pyproject.toml"]
        assert any(f.path == "tests/test_core.py" for f in snapshot.test_files())
        assert [f.path for f in snapshot.ci_files()] == [".github/workflows/ci.yml"]
        assert any(f.path == "src/widgets/core.py" for f in snapshot.source_samples())
